"""
Executes automation tools against the live desktop.

This module is the "hands" of the agent. The backend process hands every
incoming tool call to execute_tool, which refreshes the cached OS-state
snapshot and dispatches to a handler via the TOOL_HANDLERS table.

Handlers may raise; execute_tool is the single place that turns an exception
into an {"error": message} result, so a tool call never brings the backend
process down.
"""
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from app_strategies import open_new_window, prepare_input_focus, selection_gesture
from config import CLICK_PROXIMITY_RADIUS, LAUNCH_POLL_INTERVAL_SECONDS, LAUNCH_RETRIES
from data_models import CursorPosition, OSStateSnapshot
from exceptions import AutomationError
from tool_registry import ToolRegistry
from tracer import trace

INTERACTIVE_ROLES = frozenset(
    {
        "AXButton",
        "AXCheckBox",
        "AXComboBox",
        "AXLink",
        "AXMenuButton",
        "AXMenuItem",
        "AXPopUpButton",
        "AXRadioButton",
        "AXSearchField",
        "AXSlider",
        "AXTab",
        "AXTextArea",
        "AXTextField",
    }
)

SETTINGS_APP_NAMES = ("system settings", "system preferences")


class SystemInfoCache:
    """
    Facts about the machine that do not change while the backend runs.

    Collected on first use. invalidate() forces the next get() to collect again.
    """

    def __init__(self, primitives):
        self._primitives = primitives
        self._info: Optional[dict[str, str]] = None
        self._lock = threading.Lock()

    def get(self) -> dict[str, str]:
        with self._lock:
            if self._info is None:
                self._info = {
                    "macOSVersion": self._primitives.run_script("return system version of (system info)"),
                    "computerName": self._primitives.run_script("return computer name of (system info)"),
                    "memory": self._primitives.run_script("return physical memory of (system info)"),
                }
            return dict(self._info)

    def invalidate(self) -> None:
        with self._lock:
            self._info = None

    def settings_app_name(self) -> str:
        """System Preferences was renamed System Settings in macOS 13."""
        match = re.match(r"\s*(\d+)", self.get().get("macOSVersion", ""))
        if match and int(match.group(1)) < 13:
            return "System Preferences"
        return "System Settings"


@dataclass
class BackendContext:
    """A container for the stateful objects the tool handlers work with."""
    primitives: Any
    state: OSStateSnapshot = field(default_factory=OSStateSnapshot)
    system_info: Optional[SystemInfoCache] = None
    proximity_radius: float = CLICK_PROXIMITY_RADIUS
    launch_retries: int = LAUNCH_RETRIES
    launch_interval: float = LAUNCH_POLL_INTERVAL_SECONDS
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.system_info is None:
            self.system_info = SystemInfoCache(self.primitives)


# --- Helpers ---
def _require(params: dict, name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise ValueError(f"Missing required parameter: {name}")
    return value


def _coordinates(params: dict) -> tuple[float, float]:
    try:
        return float(_require(params, "x")), float(_require(params, "y"))
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid coordinates: {e}") from e


@trace
def refresh_state(context: BackendContext) -> OSStateSnapshot:
    """
    Updates the snapshot from the OS. Each probe is independent: a failed
    probe is logged and leaves the previous value in place.
    """
    p, state = context.primitives, context.state
    try:
        state.active_application = p.frontmost_app()
    except Exception as e:
        logging.warning(f"Could not read the frontmost application: {e}")
    try:
        x, y = p.cursor_position()
        state.mouse_position = CursorPosition(x=x, y=y)
    except Exception as e:
        logging.warning(f"Could not read the cursor position: {e}")
    app_name = state.active_application
    if app_name:
        try:
            bounds = p.window_bounds(app_name)
            if bounds is not None:
                state.window_positions[app_name] = bounds
        except Exception as e:
            logging.warning(f"Could not read window bounds for '{app_name}': {e}")
    return state


@trace
def check_click_target(context: BackendContext, x: float, y: float) -> tuple[bool, str]:
    """A click is allowed inside the active window or close to an interactive element."""
    window = context.state.active_window()
    if window is not None and window.contains(x, y):
        return True, f"Target is inside the {context.state.active_application} window"
    try:
        elements = context.primitives.ui_elements()
    except AutomationError as e:
        logging.warning(f"Could not list UI elements for the click check: {e}")
        elements = []
    for el in elements:
        if el.role in INTERACTIVE_ROLES and el.distance_to(x, y) <= context.proximity_radius:
            return True, f"Target is near an {el.role}"
    return False, (
        f"Click at ({x:g}, {y:g}) is outside the active window and not within "
        f"{context.proximity_radius:g}px of an interactive element. The click was not performed."
    )


def _wait_for_launch(context: BackendContext, app_name: str) -> bool:
    p = context.primitives
    for attempt in range(1, context.launch_retries + 1):
        try:
            frontmost = p.frontmost_app() or ""
            if p.is_running(app_name) and frontmost.lower() == app_name.lower():
                logging.info(f"'{app_name}' is running and frontmost after {attempt} check(s).")
                return True
        except AutomationError as e:
            logging.debug(f"Launch check {attempt} for '{app_name}' failed: {e}")
        context.sleep(context.launch_interval)
    return False


# --- Tool handlers ---
@trace
def _handle_get_current_state(params: dict, context: BackendContext) -> dict:
    return context.state.to_wire()


@trace
def _handle_run_applescript(params: dict, context: BackendContext) -> dict:
    script = _require(params, "script")
    return {"result": context.primitives.run_script(script)}


@trace
def _handle_open_application(params: dict, context: BackendContext) -> dict:
    app_name = str(_require(params, "app_name")).strip()
    if app_name.lower() in SETTINGS_APP_NAMES:
        app_name = context.system_info.settings_app_name()

    context.primitives.activate(app_name)
    if not _wait_for_launch(context, app_name):
        return {
            "success": False,
            "message": f"{app_name} did not become the active application after {context.launch_retries} checks",
        }

    try:
        open_new_window(context.primitives, app_name)
    except AutomationError as e:
        logging.warning(f"Could not open a new window in '{app_name}': {e}")

    context.state.active_application = app_name
    refresh_state(context)
    return {"success": True, "message": f"Opened {app_name}"}


@trace
def _handle_get_system_info(params: dict, context: BackendContext) -> dict:
    return context.system_info.get()


@trace
def _handle_type_text(params: dict, context: BackendContext) -> dict:
    text = params.get("text")
    if text is None:
        raise ValueError("Missing required parameter: text")
    ok, message = prepare_input_focus(context.primitives, context.state)
    if not ok:
        return {"success": False, "error": message}
    logging.info(f"Input focus: {message}")
    context.primitives.type_text(str(text))
    return {"success": True}


@trace
def _handle_key_press(params: dict, context: BackendContext) -> dict:
    key = _require(params, "key")
    modifier = params.get("modifier") or ""
    context.primitives.key_press(str(key), (modifier,) if modifier else ())
    return {"success": True}


@trace
def _handle_select_text(params: dict, context: BackendContext) -> dict:
    mode = params.get("mode") or "word"
    gesture = selection_gesture(context.state.active_application, mode)
    if gesture.clicks:
        if params.get("x") is not None and params.get("y") is not None:
            x, y = _coordinates(params)
        else:
            x, y = context.state.mouse_position.x, context.state.mouse_position.y
        context.primitives.click(x, y, clicks=gesture.clicks)
    else:
        for combo in gesture.key_combos:
            context.primitives.hotkey(*combo)
    return {"success": True, "message": f"Selected {mode}"}


@trace
def _handle_mouse_click(params: dict, context: BackendContext) -> dict:
    x, y = _coordinates(params)
    button = params.get("button") or "left"
    ok, reason = check_click_target(context, x, y)
    if not ok:
        logging.warning(reason)
        return {"success": False, "warning": reason}
    context.primitives.click(x, y, button=button)
    return {"success": True}


@trace
def _handle_mouse_move(params: dict, context: BackendContext) -> dict:
    x, y = _coordinates(params)
    context.primitives.move_mouse(x, y)
    context.state.mouse_position = CursorPosition(x=x, y=y)
    return {"success": True}


TOOL_HANDLERS: Dict[str, Callable[[Dict, BackendContext], dict]] = {
    "get_current_state": _handle_get_current_state,
    "run_applescript": _handle_run_applescript,
    "open_application": _handle_open_application,
    "get_system_info": _handle_get_system_info,
    "type_text": _handle_type_text,
    "key_press": _handle_key_press,
    "select_text": _handle_select_text,
    "mouse_click": _handle_mouse_click,
    "mouse_move": _handle_mouse_move,
}


def describe_operation(name: str, params: dict) -> str:
    """The short text stored as lastOperation."""
    if name == "open_application":
        return f"Opened application {params.get('app_name')}"
    if name == "type_text":
        text = str(params.get("text", ""))
        return f"Typed text: {text[:50]}{'...' if len(text) > 50 else ''}"
    if name == "key_press":
        modifier = params.get("modifier")
        return f"Pressed {modifier + '+' if modifier else ''}{params.get('key')}"
    if name == "mouse_click":
        return f"Clicked {params.get('button') or 'left'} at ({params.get('x')}, {params.get('y')})"
    if name == "mouse_move":
        return f"Moved mouse to ({params.get('x')}, {params.get('y')})"
    if name == "select_text":
        return f"Selected {params.get('mode') or 'word'} text"
    return f"Ran {name}"


def _succeeded(result: dict) -> bool:
    return "error" not in result and result.get("success", True) is not False


@trace
def execute_tool(name: str, params: Optional[dict], context: BackendContext, registry: ToolRegistry) -> dict:
    """
    Runs one tool call. This is the single entry point for all tool
    executions and it never raises.
    """
    if not isinstance(name, str) or name not in registry or name not in TOOL_HANDLERS:
        return {"error": f"Tool {name} not found or disabled"}
    handler = TOOL_HANDLERS[name]

    params = params if isinstance(params, dict) else {}
    try:
        refresh_state(context)
        result = handler(params, context)
    except Exception as e:
        logging.error(f"Error executing tool '{name}': {e}", exc_info=not isinstance(e, (AutomationError, ValueError)))
        return {"error": str(e)}

    if name != "get_current_state" and _succeeded(result):
        context.state.last_operation = describe_operation(name, params)
    return result
