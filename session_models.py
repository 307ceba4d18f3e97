"""
Defines the data structures for a user's conversation session.

A session accumulates the model conversation and a rolling log of what the
agent has recently done, keyed by an identifier the caller chooses. Both logs
are bounded so a long-running conversation keeps a fixed prompt footprint.
"""
import time
from typing import Literal, Optional

from eventlet.semaphore import Semaphore
from pydantic import BaseModel, Field, PrivateAttr

from config import MAX_ACTIVE_CONTEXTS, MAX_HISTORY_MESSAGES
from data_models import OSStateSnapshot


class ChatMessage(BaseModel):
    """A single conversation turn in the provider-neutral form sent to the model."""

    role: Literal["system", "user", "assistant"]
    content: str


class Session(BaseModel):
    """
    Represents one conversation with the agent.

    The session owns a lock that the orchestrator holds for an entire
    instruction chain, so two chains for the same id never interleave their
    history or context updates. The mutators below assume the caller holds
    it. Chains run on green threads, so the lock is an eventlet semaphore
    rather than a thread lock.
    """

    # The external identifier (e.g. the 'sessionId' of an HTTP request).
    id: str
    # Alternating user/assistant messages, oldest first.
    messages: list[ChatMessage] = Field(default_factory=list)
    # Summaries of recent tool executions, oldest first.
    active_contexts: list[str] = Field(default_factory=list)
    # The last OS-state snapshot fetched for this session, if any.
    current_state: Optional[OSStateSnapshot] = None
    # Epoch seconds; expiry is measured from creation.
    created_at: float = Field(default_factory=time.time)

    _lock: Semaphore = PrivateAttr(default_factory=Semaphore)

    @property
    def lock(self) -> Semaphore:
        return self._lock

    def add_exchange(self, user_text: str, assistant_text: str, limit: int = MAX_HISTORY_MESSAGES) -> None:
        """Appends one user/assistant pair and evicts the oldest whole pairs beyond the limit."""
        self.messages.append(ChatMessage(role="user", content=user_text))
        self.messages.append(ChatMessage(role="assistant", content=assistant_text))
        excess = len(self.messages) - limit
        if excess > 0:
            # Round up to an even count so roles keep alternating from 'user'.
            excess += excess % 2
            del self.messages[:excess]

    def add_active_context(self, summary: str, limit: int = MAX_ACTIVE_CONTEXTS) -> None:
        self.active_contexts.append(summary)
        if len(self.active_contexts) > limit:
            del self.active_contexts[: len(self.active_contexts) - limit]

    def history(self) -> list[dict[str, str]]:
        return [m.model_dump() for m in self.messages]

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.created_at
