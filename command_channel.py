"""
Client side of the command channel to the automation backend process.

The channel owns one long-lived backend child process. Requests are written
to its stdin as line-delimited JSON and correlated with responses on its
stdout by a unique call id, so callers on different threads can each wait on
their own reply. A dedicated reader thread dispatches stdout lines and a
second thread forwards the backend's stderr into this process's log.
"""
import json
import logging
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from config import (
    BACKEND_READY_POLL_SECONDS,
    BACKEND_READY_RETRIES,
    BACKEND_SCRIPT,
    COMMAND_TIMEOUT_SECONDS,
)
from data_models import ToolDescriptor
from exceptions import BackendNotReadyError, ChannelTimeoutError
from tracer import trace
from utils import new_call_id


@dataclass
class PendingCall:
    """An in-flight request. Whoever removes it from the pending map resolves it."""
    id: str
    tool: str
    params: dict
    created_at: float = field(default_factory=time.time)
    state: str = "pending"
    result: Any = None
    error: Optional[Exception] = None
    event: threading.Event = field(default_factory=threading.Event)


class CommandChannel:
    """
    Correlated request/response transport to the automation backend.

    Args:
        command: The argv used to start the backend. Defaults to running
                 automation_server.py with the current interpreter.
        timeout: Default seconds to wait for each tool result.
    """

    def __init__(self, command: Optional[list[str]] = None, timeout: float = COMMAND_TIMEOUT_SECONDS):
        self.command = command or [sys.executable, BACKEND_SCRIPT]
        self.timeout = timeout
        self._process: Optional[subprocess.Popen] = None
        self._server_info: Optional[dict] = None
        self._ready = threading.Event()
        self._pending: dict[str, PendingCall] = {}
        self._pending_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._process_lock = threading.Lock()

    # --- Lifecycle ---
    @trace
    def start(self) -> None:
        """Starts the backend process unless one is already running."""
        with self._process_lock:
            if self._process is not None and self._process.poll() is None:
                return
            logging.info(f"Starting automation backend: {' '.join(self.command)}")
            self._ready.clear()
            self._server_info = None
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                bufsize=1,
            )
            self._process = process
        threading.Thread(target=self._read_stdout, args=(process,), name="channel-reader", daemon=True).start()
        threading.Thread(target=self._read_stderr, args=(process,), name="channel-stderr", daemon=True).start()

    @trace
    def stop(self, wait: float = 2.0) -> None:
        with self._process_lock:
            process = self._process
            self._process = None
        if process is None:
            return
        try:
            if process.stdin:
                process.stdin.close()
        except OSError:
            pass
        try:
            process.wait(timeout=wait)
        except subprocess.TimeoutExpired:
            logging.warning("Automation backend did not exit on EOF, terminating it.")
            process.kill()
            process.wait()
        self._on_exit(process)

    def wait_until_ready(self, retries: int = BACKEND_READY_RETRIES, interval: float = BACKEND_READY_POLL_SECONDS) -> bool:
        """Polls the ready flag a bounded number of times."""
        for _ in range(retries):
            if self.is_ready:
                return True
            time.sleep(interval)
        return self.is_ready

    @property
    def is_ready(self) -> bool:
        process = self._process
        return self._ready.is_set() and process is not None and process.poll() is None

    @property
    def server_info(self) -> Optional[dict]:
        return self._server_info

    def tool_descriptors(self) -> list[ToolDescriptor]:
        info = self._server_info or {}
        return [ToolDescriptor.model_validate(t) for t in info.get("tools", [])]

    def list_tools(self) -> list[str]:
        info = self._server_info or {}
        return [t.get("name") for t in info.get("tools", []) if isinstance(t, dict)]

    # --- Requests ---
    @trace
    def call(self, tool: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        """
        Sends one tool call and blocks until its result arrives.

        Raises:
            BackendNotReadyError: The backend is not running, or exited mid-call.
            ChannelTimeoutError: No result arrived within the timeout.
        """
        if not self.is_ready:
            raise BackendNotReadyError("Automation backend is not ready")
        timeout = self.timeout if timeout is None else timeout
        pending = PendingCall(id=new_call_id(), tool=tool, params=params or {})
        with self._pending_lock:
            self._pending[pending.id] = pending

        try:
            self._send({"type": "tool_call", "data": {"id": pending.id, "name": tool, "params": pending.params}})
        except (OSError, ValueError, BackendNotReadyError) as e:
            with self._pending_lock:
                self._pending.pop(pending.id, None)
            raise BackendNotReadyError(f"Could not send {tool} to the automation backend: {e}") from e

        if not pending.event.wait(timeout):
            with self._pending_lock:
                expired = self._pending.pop(pending.id, None)
            if expired is not None:
                pending.state = "timed_out"
                raise ChannelTimeoutError(f"Timeout waiting for response from tool {tool} after {timeout:g}s")
            # Resolved between the wait expiring and the pop; the resolver is about to signal.
            pending.event.wait()

        if pending.error is not None:
            raise pending.error
        return pending.result

    def _send(self, message: dict) -> None:
        with self._write_lock:
            process = self._process
            if process is None or process.stdin is None:
                raise BackendNotReadyError("Automation backend is not running")
            process.stdin.write(json.dumps(message) + "\n")
            process.stdin.flush()

    # --- Reader side ---
    def _handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logging.debug(f"Ignoring non-JSON backend output: {line}")
            return
        if not isinstance(message, dict):
            return

        message_type = message.get("type")
        data = message.get("data") or {}
        if message_type == "server_info":
            self._server_info = data
            self._ready.set()
            tools = ", ".join(t.get("name", "?") for t in data.get("tools", []))
            logging.info(f"Automation backend '{data.get('name')}' ready with tools: {tools}")
        elif message_type == "tool_result":
            self._resolve(data.get("id"), data.get("result"))
        elif message_type == "error":
            logging.error(f"Automation backend reported an error: {data.get('message')}")
        else:
            logging.debug(f"Ignoring backend message of type '{message_type}'.")

    def _resolve(self, call_id: Optional[str], result: Any) -> None:
        with self._pending_lock:
            pending = self._pending.pop(call_id, None) if call_id else None
        if pending is None:
            logging.warning(f"Received a result for unknown or expired call '{call_id}'; ignoring it.")
            return
        pending.result = result
        pending.state = "resolved"
        pending.event.set()

    def _read_stdout(self, process: subprocess.Popen) -> None:
        try:
            for line in process.stdout:
                self._handle_line(line)
        except (OSError, ValueError) as e:
            logging.warning(f"Automation backend stdout closed: {e}")
        finally:
            self._on_exit(process)

    def _read_stderr(self, process: subprocess.Popen) -> None:
        try:
            for line in process.stderr:
                if line.strip():
                    logging.info(f"[backend] {line.rstrip()}")
        except (OSError, ValueError):
            pass

    def _on_exit(self, process: subprocess.Popen) -> None:
        """Clears readiness and fails in-flight calls when the current process goes away."""
        with self._process_lock:
            if self._process is not None and self._process is not process:
                return
            if self._process is process:
                self._process = None
            self._ready.clear()
            self._server_info = None
        with self._pending_lock:
            orphaned = list(self._pending.values())
            self._pending.clear()
        if orphaned:
            logging.warning(f"Automation backend exited with {len(orphaned)} call(s) in flight.")
        for pending in orphaned:
            pending.state = "failed"
            pending.error = BackendNotReadyError(f"Automation backend exited before answering {pending.tool}")
            pending.event.set()
        logging.info(f"Automation backend exited with code {process.poll()}.")
