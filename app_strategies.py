"""
Per-application behaviour for input focus and text selection.

Applications are sorted into a handful of classes by name, and each class maps
to a focus strategy and a selection table. Anything unrecognised is treated as
'generic', which is a complete strategy of its own rather than a missing entry.
"""
import re
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from data_models import OSStateSnapshot
from exceptions import AutomationError

AppClass = Literal["browser", "terminal", "notes", "generic"]

APP_CLASS_KEYWORDS: dict[str, tuple[str, ...]] = {
    "browser": ("safari", "chrome", "chromium", "firefox", "edge", "brave", "arc", "opera", "vivaldi"),
    "terminal": ("terminal", "iterm", "warp", "alacritty", "kitty", "hyper"),
    "notes": ("notes", "textedit", "pages", "stickies", "bbedit", "sublime", "word"),
}

TEXT_INPUT_ROLES = ("AXTextArea", "AXTextField", "AXComboBox", "AXSearchField")
NEUTRAL_KEY = "shift"


def classify_app(app_name: Optional[str]) -> AppClass:
    name = (app_name or "").lower()
    for app_class, keywords in APP_CLASS_KEYWORDS.items():
        if any(re.search(rf"\b{re.escape(k)}\d*\b", name) for k in keywords):
            return app_class  # type: ignore[return-value]
    return "generic"


# --- Input focus ---
FocusStrategy = Callable[[object, OSStateSnapshot], str]


def _click_first_input(primitives, roles: tuple[str, ...]) -> Optional[str]:
    """Clicks the first element of the highest-priority role in roles. Reads the window's elements once."""
    elements = primitives.ui_elements()
    for role in roles:
        el = next((e for e in elements if e.role == role), None)
        if el is not None:
            cx, cy = el.center
            primitives.click(cx, cy)
            return f"Clicked into {el.role} at ({cx:g}, {cy:g})"
    return None


def _press_neutral_key(primitives) -> str:
    primitives.key_press(NEUTRAL_KEY)
    return "No text field found, pressed a neutral key to wake the window"


def _focus_browser(primitives, state: OSStateSnapshot) -> str:
    return _click_first_input(primitives, ("AXTextField", "AXComboBox", "AXSearchField", "AXTextArea")) or _press_neutral_key(primitives)


def _focus_terminal(primitives, state: OSStateSnapshot) -> str:
    if state.active_window() is None:
        raise AutomationError("No terminal window is open")
    return "Terminal window accepts input directly"


def _focus_notes(primitives, state: OSStateSnapshot) -> str:
    return _click_first_input(primitives, ("AXTextArea", "AXTextField")) or _press_neutral_key(primitives)


def _focus_generic(primitives, state: OSStateSnapshot) -> str:
    return _click_first_input(primitives, TEXT_INPUT_ROLES) or _press_neutral_key(primitives)


FOCUS_STRATEGIES: dict[str, FocusStrategy] = {
    "browser": _focus_browser,
    "terminal": _focus_terminal,
    "notes": _focus_notes,
    "generic": _focus_generic,
}


def prepare_input_focus(primitives, state: OSStateSnapshot) -> tuple[bool, str]:
    """
    Best-effort attempt to put the caret somewhere typing will land.

    Returns (ok, message). A failure means the caller must not type.
    """
    app_name = state.active_application
    if not app_name:
        return False, "No active application to type into"
    app_class = classify_app(app_name)
    try:
        return True, FOCUS_STRATEGIES[app_class](primitives, state)
    except AutomationError as e:
        return False, f"Could not prepare input focus in {app_name}: {e}"


def open_new_window(primitives, app_name: str) -> Optional[str]:
    """Opens a fresh tab or window after launch so nothing already open gets typed over."""
    app_class = classify_app(app_name)
    if app_class == "browser":
        primitives.hotkey("command", "t")
        return "Opened a new tab"
    if app_class == "terminal":
        if "terminal" in app_name.lower():
            primitives.run_script('tell application "Terminal" to do script ""')
        else:
            primitives.hotkey("command", "n")
        return "Opened a new window"
    return None


# --- Text selection ---
@dataclass(frozen=True)
class SelectionGesture:
    """Either a sequence of key combinations or a multi-click at a point."""

    key_combos: tuple[tuple[str, ...], ...] = ()
    clicks: int = 0


SELECT_ALL = SelectionGesture(key_combos=(("command", "a"),))

SELECTION_STRATEGIES: dict[str, dict[str, SelectionGesture]] = {
    "browser": {
        "word": SelectionGesture(clicks=2),
        "paragraph": SelectionGesture(clicks=3),
        "all": SELECT_ALL,
    },
    "terminal": {
        "word": SelectionGesture(clicks=2),
        "paragraph": SelectionGesture(clicks=3),
        "all": SELECT_ALL,
    },
    "notes": {
        "word": SelectionGesture(key_combos=(("alt", "left"), ("alt", "shift", "right"))),
        "paragraph": SelectionGesture(key_combos=(("alt", "up"), ("alt", "shift", "down"))),
        "all": SELECT_ALL,
    },
    "generic": {
        "word": SelectionGesture(key_combos=(("alt", "left"), ("alt", "shift", "right"))),
        "paragraph": SelectionGesture(key_combos=(("command", "left"), ("command", "shift", "right"))),
        "all": SELECT_ALL,
    },
}


def selection_gesture(app_name: Optional[str], mode: str) -> SelectionGesture:
    table = SELECTION_STRATEGIES[classify_app(app_name)]
    if mode not in table:
        raise ValueError(f"Unknown selection mode '{mode}'. Use one of: {', '.join(table)}")
    return table[mode]
