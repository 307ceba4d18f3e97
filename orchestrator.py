"""
Core command loop for the agent.

This module drives a single user instruction to completion: ask the planner
for a step, check the chosen tool against what the backend offers, run it
over the command channel, feed the result back into the next prompt, and stop
when the model says the operation is complete or the step ceiling is hit.

Blocking work (model calls and channel round-trips) is handed to eventlet's
thread pool, so the loop itself can run on a green thread without stalling
the web server.
"""
import json
import logging
import uuid
from typing import Any, Optional

from eventlet import tpool
from pydantic import ValidationError

from audit_logger import audit_log
from command_channel import CommandChannel
from config import MAX_ORCHESTRATION_STEPS
from data_models import OSStateSnapshot, PlanDecision, StepRecord
from exceptions import ChannelError, UnprocessableResponseError
from planner import Planner
from response_parser import salvage_decision
from session_models import Session
from tracer import log_event, trace
from utils import to_json

COMPLETED_MARKER = "Operation completed successfully."
PARTIAL_MARKER = "Operation partially completed or needs further steps."


def build_context_summary(tool: str, params: dict, result: Any) -> str:
    return f"Last executed tool: {tool} with parameters {to_json(params)}\nResult: {to_json(result)}"


def build_continuation_prompt(instruction: str, context: str, next_step: Optional[str]) -> str:
    base = f'User command: "{instruction}"\n\nPrevious step completed: {context}\n\n'
    if next_step:
        return base + f"Continue operation: {next_step}"
    return base + "What is the next step to complete this operation?"


def _emit_tool_log(socketio, room: Optional[str], message: str) -> None:
    if socketio is not None:
        socketio.emit("tool_log", {"data": message}, to=room)


@trace
def ensure_backend_ready(channel: CommandChannel) -> bool:
    """Starts the backend if needed and polls, without blocking the event loop, until it announces itself."""
    if channel.is_ready:
        return True
    channel.start()
    return tpool.execute(channel.wait_until_ready)


@trace
def refresh_session_state(session: Session, channel: CommandChannel) -> Optional[OSStateSnapshot]:
    """Best effort: a failure is logged and the previous snapshot is kept."""
    try:
        result = tpool.execute(channel.call, "get_current_state", {})
    except ChannelError as e:
        logging.warning(f"Could not refresh the OS state for session '{session.id}': {e}")
        return session.current_state
    if not isinstance(result, dict) or "error" in result:
        logging.warning(f"get_current_state returned an unexpected result: {result}")
        return session.current_state
    try:
        session.current_state = OSStateSnapshot.model_validate(result)
    except ValidationError as e:
        logging.warning(f"get_current_state returned a malformed snapshot: {e}")
    return session.current_state


@trace
def _decide(planner: Planner, prompt: str, session: Session, tools, known: set[str]) -> tuple[Optional[PlanDecision], Optional[str]]:
    """
    Returns (decision, None), or (None, failure message) when the reply was
    unusable and nothing could be salvaged from it.
    """
    try:
        return tpool.execute(planner.plan, prompt, session, tools), None
    except UnprocessableResponseError as e:
        salvaged = salvage_decision(e.raw_text)
        if salvaged is None or salvaged["tool"] not in known:
            logging.warning(f"Unprocessable model reply and nothing to salvage: {e}")
            return None, f"Error processing request: {e}"
        logging.warning(f"Salvaged tool '{salvaged['tool']}' from an unprocessable model reply.")
        return PlanDecision.model_validate(salvaged), None


@trace
def run_instruction(
    session: Session,
    instruction: str,
    planner: Planner,
    channel: CommandChannel,
    max_steps: int = MAX_ORCHESTRATION_STEPS,
    socketio=None,
    room: Optional[str] = None,
) -> StepRecord:
    """
    Runs one instruction to completion and returns the head of the step chain.

    The session lock is held for the whole chain. Reported failures (an
    unresolved tool, an unsalvageable reply, the step ceiling) end the chain
    with a failure record. Channel and model-backend errors propagate.
    """
    loop_id = str(uuid.uuid4())
    steps: list[StepRecord] = []

    with session.lock:
        refresh_session_state(session, channel)
        audit_log.log_event(
            "Instruction Received",
            session_id=session.id,
            loop_id=loop_id,
            source="User",
            destination="Orchestrator",
            details={"instruction": instruction},
        )

        prompt = instruction
        for step_number in range(1, max_steps + 1):
            log_event(f"step {step_number}", {"session": session.id, "loop_id": loop_id})
            if socketio is not None:
                socketio.sleep(0)

            tools = channel.tool_descriptors()
            known = {t.name for t in tools}
            decision, failure = _decide(planner, prompt, session, tools, known)
            if failure is not None:
                steps.append(StepRecord(action="Plan next step", failure=failure))
                break

            if not decision.tool or decision.tool not in known:
                reason = decision.explanation or decision.error or ""
                steps.append(
                    StepRecord(
                        action=decision.explanation or decision.tool or "Plan next step",
                        tool=decision.tool,
                        params=decision.params,
                        failure=f"No suitable tool found for this request: {reason}",
                    )
                )
                break

            audit_log.log_event(
                "Tool Call",
                session_id=session.id,
                loop_id=loop_id,
                source="Orchestrator",
                destination="Automation Backend",
                details={"tool": decision.tool, "params": decision.params, "salvaged": decision.salvaged},
            )
            result = tpool.execute(channel.call, decision.tool, decision.params)
            audit_log.log_event(
                "Tool Result",
                session_id=session.id,
                loop_id=loop_id,
                source="Automation Backend",
                destination="Orchestrator",
                details={"tool": decision.tool, "result": result},
            )

            context = build_context_summary(decision.tool, decision.params, result)
            session.add_active_context(context)
            _emit_tool_log(socketio, room, f"[{decision.tool}] {to_json(result)}")

            steps.append(
                StepRecord(
                    action=decision.explanation or decision.tool,
                    tool=decision.tool,
                    params=decision.params,
                    result=result,
                    is_completed=decision.is_completed,
                )
            )
            if decision.is_completed:
                break
            prompt = build_continuation_prompt(instruction, context, decision.next_step)
        else:
            logging.warning(f"Instruction for session '{session.id}' hit the {max_steps}-step ceiling.")
            steps.append(
                StepRecord(
                    action="Step limit",
                    failure=f"Stopped after {max_steps} steps without the operation being marked complete.",
                )
            )

        refresh_session_state(session, channel)

    for current, following in zip(steps, steps[1:]):
        current.next = following
    logging.info(f"Instruction for session '{session.id}' finished after {len(steps)} record(s).")
    return steps[0]


# --- Result helpers ---
def flatten_steps(record: Optional[StepRecord]) -> list[StepRecord]:
    steps = []
    while record is not None:
        steps.append(record)
        record = record.next
    return steps


def chain_is_completed(record: StepRecord) -> bool:
    last = flatten_steps(record)[-1]
    return last.is_completed and last.failure is None


def chain_has_next_steps(record: StepRecord) -> bool:
    return record.next is not None or not chain_is_completed(record)


def _format_result(result: Any) -> str:
    if isinstance(result, (dict, list)):
        return json.dumps(result, indent=2, ensure_ascii=False, default=str)
    return str(result)


def format_trace(record: StepRecord, state: Optional[OSStateSnapshot] = None) -> str:
    """Renders the step chain as the indented, human-readable report returned to users."""
    output = ""
    for depth, step in enumerate(flatten_steps(record)):
        indent = "  " * depth
        body = step.failure if step.failure is not None else _format_result(step.result)
        if step.tool:
            output += f"{indent}Operation: {step.action or step.tool}\n"
            output += f"{indent}  Tool: {step.tool}\n"
            output += f"{indent}  Parameters: {to_json(step.params)}\n"
            output += f"{indent}  Result: {body}\n\n"
        else:
            output += f"{indent}Result: {body}\n\n"

    output += f"\n{COMPLETED_MARKER if chain_is_completed(record) else PARTIAL_MARKER}\n"

    if state is not None:
        output += "\n\nCurrent state:\n"
        output += f"- Active application: {state.active_application or 'Unknown'}\n"
        output += f"- Mouse position: ({state.mouse_position.x:g}, {state.mouse_position.y:g})\n"
        output += f"- Last operation: {state.last_operation or 'Unknown'}\n"
    return output


@trace
def execute_command(
    session: Session,
    instruction: str,
    planner: Planner,
    channel: CommandChannel,
    socketio=None,
    room: Optional[str] = None,
    max_steps: int = MAX_ORCHESTRATION_STEPS,
) -> dict:
    """Runs an instruction and packages the outcome the way both network surfaces return it."""
    record = run_instruction(session, instruction, planner, channel, max_steps=max_steps, socketio=socketio, room=room)
    return {
        "result": format_trace(record, session.current_state),
        "isCompleted": chain_is_completed(record),
        "hasNextSteps": chain_has_next_steps(record),
    }
