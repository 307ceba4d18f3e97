"""
The automation backend process.

Runs as a child of the web application and speaks line-delimited JSON over
stdio: it announces itself with a server_info message, then answers each
tool_call line with a tool_result line, one request at a time. Stdout carries
protocol lines only; all diagnostics go to stderr.
"""
import json
import logging
import sys
from typing import IO, Optional

from automation_backend import BackendContext, execute_tool
from config import (
    BACKEND_DESCRIPTION,
    BACKEND_NAME,
    BACKEND_VERSION,
    ENABLE_APPLESCRIPT,
    ENABLE_KEYBOARD_CONTROL,
    ENABLE_MOUSE_CONTROL,
)
from os_primitives import MacOSPrimitives
from tool_registry import ToolRegistry, build_registry
from tracer import trace


def configure_logging() -> None:
    """Configures logging for the backend process. Stdout is reserved for the protocol."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - Backend - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def server_info(registry: ToolRegistry) -> dict:
    return {
        "name": BACKEND_NAME,
        "description": BACKEND_DESCRIPTION,
        "version": BACKEND_VERSION,
        "tools": [t.to_wire() for t in registry.list_tools()],
    }


class AutomationServer:
    """Reads requests from one stream and writes responses to another."""

    def __init__(self, context: BackendContext, registry: ToolRegistry, out: Optional[IO[str]] = None):
        self.context = context
        self.registry = registry
        self.out = out or sys.stdout

    def send(self, message_type: str, data: dict) -> None:
        self.out.write(json.dumps({"type": message_type, "data": data}, default=str) + "\n")
        self.out.flush()

    @trace
    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            message = json.loads(line)
            if not isinstance(message, dict):
                raise ValueError("Message must be a JSON object")
            if message.get("type") != "tool_call":
                logging.warning(f"Ignoring message of type '{message.get('type')}'.")
                return
            data = message.get("data") or {}
            call_id = data["id"]
            name = data["name"]
            if not isinstance(call_id, str) or not isinstance(name, str):
                raise TypeError("Tool call id and name must be strings")
        except (ValueError, KeyError, TypeError) as e:
            logging.error(f"Malformed request: {e}")
            self.send("error", {"message": str(e)})
            return

        logging.info(f"Tool call {call_id}: {name}")
        result = execute_tool(name, data.get("params"), self.context, self.registry)
        self.send("tool_result", {"id": call_id, "result": result})

    def serve(self, stream: IO[str]) -> None:
        self.send("server_info", server_info(self.registry))
        logging.info(
            f"{BACKEND_NAME} backend started with tools: {', '.join(self.registry.names())} "
            f"(mouse={ENABLE_MOUSE_CONTROL}, keyboard={ENABLE_KEYBOARD_CONTROL}, applescript={ENABLE_APPLESCRIPT})"
        )
        for line in stream:
            self.handle_line(line)
        logging.info("Input closed, backend shutting down.")


def main() -> None:
    configure_logging()
    context = BackendContext(primitives=MacOSPrimitives())
    AutomationServer(context, build_registry()).serve(sys.stdin)


if __name__ == "__main__":
    main()
