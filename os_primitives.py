"""
Low-level macOS automation primitives.

AppleScript runs through the `osascript` command line tool and pointer and
keyboard input go through pyautogui. Every primitive raises AutomationError
when the OS refuses or cannot complete the request; turning those failures
into tool results is the backend's job, not this module's.
"""
import logging
import subprocess
from typing import Optional

from config import OSASCRIPT_TIMEOUT_SECONDS
from data_models import UIElement, WindowGeometry
from exceptions import AutomationError

# robotjs-style names the model tends to use, mapped to pyautogui key names.
KEY_ALIASES = {
    "control": "ctrl",
    "cmd": "command",
    "option": "alt",
    "return": "enter",
    "escape": "esc",
    "delete": "backspace",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
    "spacebar": "space",
}


def normalize_key(key: str) -> str:
    k = key.strip().lower()
    return KEY_ALIASES.get(k, k)


def quote_applescript(value: str) -> str:
    """Returns value as an AppleScript string literal."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def run_osascript(script: str, timeout: float = OSASCRIPT_TIMEOUT_SECONDS) -> str:
    """Runs an AppleScript snippet and returns its trimmed stdout."""
    try:
        proc = subprocess.run(
            ["osascript", "-e", script],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise AutomationError(f"AppleScript timed out after {timeout}s") from e
    except OSError as e:
        raise AutomationError(f"Could not run osascript: {e}") from e
    if proc.returncode != 0:
        raise AutomationError(proc.stderr.strip() or f"osascript exited with code {proc.returncode}")
    return proc.stdout.strip()


_FRONTMOST_SCRIPT = 'tell application "System Events" to get name of first application process whose frontmost is true'

_UI_ELEMENTS_SCRIPT = """
tell application "System Events"
    tell (first application process whose frontmost is true)
        set out to ""
        repeat with el in (entire contents of front window)
            try
                set p to position of el
                set s to size of el
                set out to out & (role of el) & "|" & (item 1 of p) & "|" & (item 2 of p) & "|" & (item 1 of s) & "|" & (item 2 of s) & linefeed
            end try
        end repeat
        return out
    end tell
end tell
"""


def _parse_numbers(text: str) -> list[float]:
    return [float(part.strip()) for part in text.split(",") if part.strip()]


class MacOSPrimitives:
    """
    The capability contract the automation backend relies on.

    Tests substitute a fake with the same methods; nothing here keeps state.
    """

    def __init__(self, script_timeout: float = OSASCRIPT_TIMEOUT_SECONDS) -> None:
        try:
            import pyautogui  # type: ignore
        except Exception as e:  # noqa: BLE001
            raise RuntimeError("pyautogui is required for keyboard and mouse control. Install with `pip install pyautogui`.") from e
        self._gui = pyautogui
        self.script_timeout = script_timeout

    # --- AppleScript ---
    def run_script(self, script: str) -> str:
        return run_osascript(script, timeout=self.script_timeout)

    def frontmost_app(self) -> Optional[str]:
        name = self.run_script(_FRONTMOST_SCRIPT)
        return name or None

    def is_running(self, app_name: str) -> bool:
        return self.run_script(f"return application {quote_applescript(app_name)} is running").lower() == "true"

    def activate(self, app_name: str) -> None:
        self.run_script(f"tell application {quote_applescript(app_name)} to activate")

    def window_bounds(self, app_name: str) -> Optional[WindowGeometry]:
        script = (
            'tell application "System Events" to tell (first application process whose name is '
            f"{quote_applescript(app_name)}) to get {{position, size}} of front window"
        )
        try:
            numbers = _parse_numbers(self.run_script(script))
        except AutomationError as e:
            # Apps without windows (or without accessibility access) land here.
            logging.debug(f"No front window for '{app_name}': {e}")
            return None
        if len(numbers) < 4:
            return None
        return WindowGeometry(x=numbers[0], y=numbers[1], width=numbers[2], height=numbers[3])

    def ui_elements(self) -> list[UIElement]:
        """Lists the elements of the frontmost window that report a frame."""
        elements = []
        for line in self.run_script(_UI_ELEMENTS_SCRIPT).splitlines():
            parts = line.split("|")
            if len(parts) != 5:
                continue
            try:
                x, y, w, h = (float(p) for p in parts[1:])
            except ValueError:
                continue
            elements.append(UIElement(role=parts[0].strip(), x=x, y=y, width=w, height=h))
        return elements

    # --- Pointer ---
    def cursor_position(self) -> tuple[float, float]:
        pos = self._gui.position()
        return float(pos[0]), float(pos[1])

    def move_mouse(self, x: float, y: float) -> None:
        try:
            self._gui.moveTo(x, y)
        except Exception as e:  # noqa: BLE001
            raise AutomationError(f"Mouse move failed: {e}") from e

    def click(self, x: float, y: float, button: str = "left", clicks: int = 1) -> None:
        try:
            self._gui.click(x=x, y=y, button=button, clicks=clicks, interval=0.08)
        except Exception as e:  # noqa: BLE001
            raise AutomationError(f"Mouse click failed: {e}") from e

    # --- Keyboard ---
    def type_text(self, text: str) -> None:
        try:
            self._gui.write(text, interval=0.01)
        except Exception as e:  # noqa: BLE001
            raise AutomationError(f"Typing failed: {e}") from e

    def key_press(self, key: str, modifiers: tuple[str, ...] = ()) -> None:
        keys = [normalize_key(m) for m in modifiers if m] + [normalize_key(key)]
        try:
            if len(keys) == 1:
                self._gui.press(keys[0])
            else:
                self._gui.hotkey(*keys)
        except Exception as e:  # noqa: BLE001
            raise AutomationError(f"Key press failed for {'+'.join(keys)}: {e}") from e

    def hotkey(self, *keys: str) -> None:
        self.key_press(keys[-1], tuple(keys[:-1]))
