"""
Handles all SocketIO event logic for the application.

Clients send an instruction with 'start_task' and receive a 'tool_log' event
for every executed step, followed by a single 'task_result' (or an error
'log_message'). The instruction runs in a background task so the server
stays responsive while the chain executes.
"""
import logging

from flask import request
from flask_socketio import SocketIO

from audit_logger import audit_log
from orchestrator import ensure_backend_ready, execute_command
from tracer import global_tracer, trace


@trace
def run_task(socketio: SocketIO, services, session_id: str, prompt: str, room: str) -> None:
    """Background task body for one instruction received over Socket.IO."""
    try:
        if not ensure_backend_ready(services.channel):
            socketio.emit("log_message", {"type": "error", "data": "Automation backend is not ready"}, to=room)
            return
        session = services.store.get_or_create(session_id)
        payload = execute_command(session, prompt, services.planner, services.channel, socketio=socketio, room=room)
        socketio.emit("task_result", payload, to=room)
    except Exception as e:
        error_message = f"An error occurred while running the instruction: {e}"
        logging.exception(error_message)
        socketio.emit("log_message", {"type": "error", "data": error_message}, to=room)
    finally:
        logging.info(f"Task ended for session {session_id}.")


@trace
def register_events(socketio: SocketIO, services) -> None:
    """
    Registers all SocketIO event handlers with the main application.

    Args:
        socketio: The SocketIO server.
        services: The shared channel, planner and session store.
    """

    @socketio.on("connect")
    @trace
    def handle_connect(auth=None) -> None:
        logging.info(f"Client connected: {request.sid}")

    @socketio.on("disconnect")
    @trace
    def handle_disconnect(auth=None) -> None:
        logging.info(f"Client disconnected: {request.sid}")

    @socketio.on("start_task")
    @trace
    def handle_start_task(data: dict) -> None:
        """
        Receives an instruction and runs it in a background task.

        Args:
            data: {"prompt": "...", "sessionId": "..."}. The session id
                  defaults to the Socket.IO connection id.
        """
        room = request.sid
        data = data or {}
        prompt = (data.get("prompt") or "").strip()
        if not prompt:
            socketio.emit("log_message", {"type": "error", "data": "Empty request"}, to=room)
            return
        session_id = data.get("sessionId") or room
        audit_log.log_event("Task Received", session_id=session_id, source="Client", destination="Server")
        socketio.start_background_task(run_task, socketio, services, session_id, prompt, room)

    @socketio.on("reset_tracer")
    @trace
    def handle_reset_tracer(data=None):
        """Clears the global call trace."""
        logging.info("Received request to reset global tracer.")
        global_tracer.reset()

    @socketio.on("get_trace_log")
    @trace
    def handle_get_trace_log(data=None):
        """Sends the recent call trace back to the requesting client."""
        socketio.emit("trace_log_response", {"trace": global_tracer.get_trace()}, to=request.sid)
