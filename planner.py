"""
The model gateway: turns one instruction into one PlanDecision.

The planner builds the system prompt from the tool catalog, the session's
current OS-state snapshot and its recent tool results, sends it together with
the conversation history to the configured model backend, records the
exchange in the session, and decodes the reply.
"""
import logging
import threading
from typing import Callable, Sequence

from pydantic import ValidationError

from data_models import ModelConfig, PlanDecision, ToolDescriptor
from exceptions import PlannerError, UnprocessableResponseError
from llm_providers import ModelBackend, build_backend
from response_parser import parse_plan_response
from session_models import Session
from tracer import trace

SAFETY_GUIDELINES = """SAFETY GUIDELINES:
1. Always ensure applications are opened safely, preferably in new windows/tabs when appropriate
2. Verify applications have fully launched before executing commands on them
3. For multi-step operations, make sure each step completes successfully before proceeding
4. Check the current state before taking actions to avoid errors
5. When navigating system settings, verify you are in the right location before making changes"""

MULTI_STEP_PROTOCOL = """Analyze user command and determine the most suitable tool and parameters for execution.
For multi-step operations (where multiple steps are needed to complete the user request):
1. Set "isCompleted": false in your response
2. Provide a brief explanation of the next step in the "nextStep" field
3. The system will call you again to continue the operation"""

RESPONSE_FORMAT = """Return response in JSON format as follows:
{
  "tool": "tool_name",
  "params": {
    "param1": "value1",
    "param2": "value2"
  },
  "explanation": "Short explanation of why this tool was selected",
  "isCompleted": boolean, // Set to false if more steps are needed
  "nextStep": "Explanation of next step if operation is not completed"
}

IMPORTANT: Return ONLY the JSON object without any explanatory text, preamble, or code block formatting.
Do not add explanations or details outside the JSON response. The entire response must be valid JSON.

If you cannot process the request, respond with a JSON error message like:
{
  "error": "Your error message"
}"""


def describe_tools(tools: Sequence[ToolDescriptor]) -> str:
    lines = []
    for tool in tools:
        params = ", ".join(
            f"{name}: {spec.description or 'No description'} ({spec.type})"
            for name, spec in tool.parameters.properties.items()
        )
        lines.append(f"{tool.name}: {tool.description} | Parameters: {params or 'None'}")
    return "\n".join(lines)


class Planner:
    """
    Owns the binding between a ModelConfig and the backend built from it.

    The binding is a single tuple attribute so a reconfigure() can never be
    observed half-applied by a plan() running on another thread.
    """

    def __init__(self, config: ModelConfig, backend_factory: Callable[[ModelConfig], ModelBackend] = build_backend):
        self._backend_factory = backend_factory
        self._binding = (config, backend_factory(config))
        self._lock = threading.Lock()

    @property
    def config(self) -> ModelConfig:
        return self._binding[0]

    @trace
    def reconfigure(self, config: ModelConfig) -> None:
        backend = self._backend_factory(config)
        with self._lock:
            self._binding = (config, backend)
        logging.info(f"Planner now using {config.provider} / {config.model}.")

    def build_system_prompt(self, tools: Sequence[ToolDescriptor], session: Session) -> str:
        state_info = session.current_state.describe() if session.current_state else "Unknown"
        contexts = "\n".join(session.active_contexts)
        return (
            "You are a smart assistant that can control the macOS operating system using the following tools:\n\n"
            f"{describe_tools(tools)}\n\n"
            f"{SAFETY_GUIDELINES}\n\n"
            f"{MULTI_STEP_PROTOCOL}\n\n"
            f"Current system state:\n{state_info}\n\n"
            f"Active context from previous operations:\n{contexts}\n\n"
            f"{RESPONSE_FORMAT}\n"
        )

    def build_messages(self, instruction: str, session: Session, tools: Sequence[ToolDescriptor]) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.build_system_prompt(tools, session)},
            *session.history(),
            {"role": "user", "content": instruction},
        ]

    @trace
    def plan(self, instruction: str, session: Session, tools: Sequence[ToolDescriptor]) -> PlanDecision:
        """
        Asks the model for the next step.

        Raises:
            ModelBackendError: The model could not be reached.
            UnprocessableResponseError: The reply could not be decoded into a decision.
            PlannerError: No tool catalog is available to plan with.
        """
        if not tools:
            raise PlannerError("Automation backend tool information is not available")
        config, backend = self._binding
        messages = self.build_messages(instruction, session, tools)
        logging.info(f"Planning with {config.provider}/{config.model}: {instruction[:120]}")

        raw = backend.complete(messages)
        session.add_exchange(instruction, raw)

        data = parse_plan_response(raw)
        data.pop("salvaged", None)
        try:
            return PlanDecision.model_validate(data)
        except ValidationError as e:
            logging.warning(f"Model reply did not form a valid decision: {e}")
            raise UnprocessableResponseError(raw) from e
