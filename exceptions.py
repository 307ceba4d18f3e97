"""
Exception hierarchy shared by the planner, the command channel and the
automation backend.

Automation-level failures never leave the backend as exceptions; they are
converted into result dictionaries. Channel and model-backend failures are
infrastructure problems and propagate to whoever started the orchestration.
"""


class AgentError(Exception):
    """Base class for all errors raised by this application."""


class AutomationError(AgentError):
    """An OS primitive (osascript, pointer, keyboard) could not complete."""


class ChannelError(AgentError):
    """The command channel to the automation backend failed."""


class ChannelTimeoutError(ChannelError):
    """No response arrived for a tool call within the channel timeout."""


class BackendNotReadyError(ChannelError):
    """The automation backend process is not running or has not announced itself."""


class PlannerError(AgentError):
    """Base class for planning failures."""


class ModelBackendError(PlannerError):
    """The language model could not be reached or returned a non-2xx status."""


class UnprocessableResponseError(PlannerError):
    """
    The language model replied, but nothing usable could be decoded from it.

    The raw reply is kept so the orchestrator can attempt a degraded salvage.
    """

    def __init__(self, raw_text: str, reason: str = "LLM response not processable"):
        self.raw_text = raw_text
        self.reason = reason
        super().__init__(f"{reason}: {raw_text}")
