"""
In-memory registry of conversation sessions.

Sessions are created on first use and expire a fixed time after creation.
Nothing is persisted; a restart starts every conversation afresh.
"""
import logging
import threading
import time
from typing import Optional

from config import SESSION_MAX_AGE_SECONDS, SESSION_SWEEP_INTERVAL_SECONDS
from session_models import Session
from tracer import trace


class SessionStore:
    """A lock-guarded map of session id to Session."""

    def __init__(self, max_age: float = SESSION_MAX_AGE_SECONDS):
        self.max_age = max_age
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    @trace
    def get_or_create(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(id=session_id)
                self._sessions[session_id] = session
                logging.info(f"Created session '{session_id}'.")
            return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    @trace
    def sweep(self, now: Optional[float] = None) -> list[str]:
        """Removes sessions older than max_age and returns their ids."""
        now = time.time() if now is None else now
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if now - s.created_at > self.max_age]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            logging.info(f"Swept {len(expired)} expired session(s): {', '.join(expired)}")
        return expired

    def run_sweeper(self, socketio, interval: float = SESSION_SWEEP_INTERVAL_SECONDS) -> None:
        """Background task body: sweeps forever, sleeping cooperatively between passes."""
        while True:
            socketio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logging.error(f"Session sweep failed: {e}", exc_info=True)
