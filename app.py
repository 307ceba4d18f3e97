"""
Main application bootstrap file.

Builds the Flask application and the SocketIO server, wires the shared
services (command channel, planner, session store) into the HTTP routes and
the SocketIO event handlers, and starts the server. The automation backend is
started as a child process when the server comes up and again on demand if it
has gone away.
"""
import atexit
import copy
import logging
from dataclasses import dataclass, field
from typing import Optional

import debugpy
from eventlet import tpool
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO
from pydantic import SecretStr

import events
from audit_logger import audit_log
from command_channel import CommandChannel
from config import (
    DEBUG_MODE,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    GEMINI_API_KEY,
    LLM_API_KEY,
    LLM_PROVIDERS,
    SERVER_PORT,
)
from data_models import ModelConfig
from exceptions import AgentError
from llm_providers import check_provider_availability
from orchestrator import ensure_backend_ready, execute_command
from planner import Planner
from session_store import SessionStore
from tracer import global_tracer, trace

ENV_API_KEYS = {"openai": LLM_API_KEY, "gemini": GEMINI_API_KEY}


def default_model_config() -> ModelConfig:
    return ModelConfig(
        provider=DEFAULT_PROVIDER,
        model=DEFAULT_MODEL,
        api_key=SecretStr(ENV_API_KEYS.get(DEFAULT_PROVIDER, "")),
    )


@dataclass
class Services:
    """The long-lived objects shared by the HTTP routes and the SocketIO handlers."""
    channel: CommandChannel
    planner: Planner
    store: SessionStore
    # Per-process copy of the provider catalog; the local model list is refreshed on switch.
    providers: dict = field(default_factory=lambda: copy.deepcopy(LLM_PROVIDERS))

    def llm_status(self) -> dict:
        return {**self.planner.config.public_view(), "available_providers": self.providers}


def _apply_config_update(services: Services, data: dict):
    """
    Validates a provider/model/key change and commits it as one new ModelConfig.

    Returns (response body, status code).
    """
    current = services.planner.config
    provider = data.get("provider")
    model = data.get("model")
    api_key = data.get("apiKey")

    if provider and provider not in services.providers:
        return {"error": f"Unknown provider: {provider}"}, 400

    new_provider = provider or current.provider
    catalog = services.providers[new_provider]

    if not catalog["requiresKey"]:
        new_key = ""
    elif api_key:
        new_key = api_key
    elif new_provider == current.provider:
        new_key = current.api_key.get_secret_value()
    else:
        new_key = ENV_API_KEYS.get(new_provider, "")

    if provider:
        status = tpool.execute(check_provider_availability, new_provider, new_key)
        if not status["available"]:
            return {"error": f"{catalog['name']} not available", "message": status.get("message")}, 400
        if new_provider == "ollama" and status.get("models"):
            catalog["models"] = status["models"]

    if model:
        if model not in catalog["models"]:
            return {"error": f"Model {model} not available for {catalog['name']}"}, 400
        new_model = model
    elif provider and provider != current.provider:
        new_model = catalog["models"][0]
    else:
        new_model = current.model

    services.planner.reconfigure(
        ModelConfig(provider=new_provider, model=new_model, api_key=SecretStr(new_key), base_url=current.base_url)
    )
    audit_log.log_event(
        "Model Config Updated",
        source="Client",
        destination="Planner",
        details={"provider": new_provider, "model": new_model},
    )
    return services.llm_status(), 200


def create_app(services: Optional[Services] = None):
    """Builds the Flask app and SocketIO server around the given (or default) services."""
    if services is None:
        services = Services(channel=CommandChannel(), planner=Planner(default_model_config()), store=SessionStore())

    app = Flask(__name__)
    CORS(app)
    socketio = SocketIO(app, cors_allowed_origins="*", async_mode="eventlet")
    app.extensions["agent_services"] = services

    audit_log.register_socketio(socketio)
    events.register_events(socketio, services)

    # --- SERVER ROUTES ---
    @app.route("/api/llm-control", methods=["POST"])
    @trace
    def llm_control():
        """Runs one instruction and returns the formatted step trace."""
        data = request.get_json(silent=True) or {}
        prompt = (data.get("prompt") or "").strip()
        if not prompt:
            return jsonify({"error": "Empty request"}), 400
        session_id = data.get("sessionId") or "default"

        try:
            if not ensure_backend_ready(services.channel):
                return jsonify({"error": "Automation backend is not ready"}), 500
            session = services.store.get_or_create(session_id)
            logging.info(f"Processing user prompt for session '{session_id}': \"{prompt}\"")
            return jsonify(execute_command(session, prompt, services.planner, services.channel))
        except AgentError as e:
            logging.error(f"Error processing request: {e}")
            return jsonify({"error": str(e)}), 500
        except Exception as e:
            logging.exception("Unexpected error processing request")
            return jsonify({"error": str(e)}), 500

    @app.route("/api/llm-control/status", methods=["GET"])
    @trace
    def llm_status():
        return jsonify(
            {
                "status": "active" if services.channel.is_ready else "inactive",
                "tools": services.channel.list_tools(),
                "llm": services.llm_status(),
            }
        )

    @app.route("/api/llm-control/config", methods=["POST"])
    @trace
    def llm_config():
        try:
            body, status = _apply_config_update(services, request.get_json(silent=True) or {})
        except Exception as e:
            logging.exception("Error updating LLM config")
            return jsonify({"error": str(e)}), 500
        return jsonify(body), status

    @app.route("/api/llm-control/check-ollama", methods=["GET"])
    @trace
    def check_ollama():
        try:
            return jsonify(tpool.execute(check_provider_availability, "ollama"))
        except Exception as e:
            logging.exception("Ollama availability check failed")
            return jsonify({"available": False, "error": str(e)}), 500

    @app.route("/api/llm-control/trace", methods=["GET"])
    @trace
    def get_trace():
        limit = request.args.get("limit", type=int)
        return jsonify({"trace": global_tracer.get_trace(limit)})

    return app, socketio


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    app, socketio = create_app()
    services = app.extensions["agent_services"]

    if DEBUG_MODE:
        debugpy.listen(("0.0.0.0", 5678))
        app.logger.info("Debugpy server listening. Waiting for debugger to attach...")
        debugpy.wait_for_client()
        app.logger.info("Debugger attached.")

    services.channel.start()
    atexit.register(services.channel.stop)
    socketio.start_background_task(services.store.run_sweeper, socketio)

    app.logger.info(f"Starting Mac Control server on http://127.0.0.1:{SERVER_PORT}")
    socketio.run(app, port=SERVER_PORT)


# --- MAIN EXECUTION ---
if __name__ == "__main__":
    main()
