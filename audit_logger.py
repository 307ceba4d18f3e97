"""
Audit trail of what the agent was asked to do and what it did.

Every instruction, tool call, tool result and model-configuration change is
appended as one row of a CSV file and, once the web app has registered its
Socket.IO server, pushed to connected clients as a 'new_audit_event'.
"""
import csv
import json
import os
import threading
from datetime import datetime
from typing import Any, Optional

from config import AUDIT_LOG_PATH

AUDIT_COLUMNS = ["Timestamp", "Event", "SessionID", "LoopID", "Source", "Destination", "Details"]


def _cell(value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class AuditLogger:
    """Appends audit rows to a CSV file. Safe to call from any thread."""

    def __init__(self, filepath: str = AUDIT_LOG_PATH):
        self.filepath = filepath
        self.lock = threading.Lock()
        self.socketio = None

    def register_socketio(self, sio) -> None:
        self.socketio = sio

    def _open_for_append(self):
        """Opens the trail for appending, writing the header row first if the file is new. Caller holds the lock."""
        os.makedirs(os.path.dirname(self.filepath) or ".", exist_ok=True)
        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        f = open(self.filepath, "a", newline="", encoding="utf-8")
        if is_new:
            csv.writer(f).writerow(AUDIT_COLUMNS)
        return f

    def log_event(
        self,
        event: str,
        session_id: Optional[str] = None,
        loop_id: Optional[str] = None,
        source: Optional[str] = None,
        destination: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        row = {
            "Timestamp": datetime.now().isoformat(),
            "Event": _cell(event),
            "SessionID": _cell(session_id),
            "LoopID": _cell(loop_id),
            "Source": _cell(source),
            "Destination": _cell(destination),
            "Details": "" if details is None else json.dumps(details, default=str),
        }
        with self.lock:
            with self._open_for_append() as f:
                csv.DictWriter(f, fieldnames=AUDIT_COLUMNS, quoting=csv.QUOTE_ALL).writerow(row)
            sio = self.socketio

        if sio is not None:
            payload = {
                "event": event,
                "session_id": session_id,
                "loop_id": loop_id,
                "source": source,
                "destination": destination,
                "details": details,
            }
            sio.start_background_task(sio.emit, "new_audit_event", payload)


audit_log = AuditLogger()
