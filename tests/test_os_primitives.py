import subprocess
from unittest.mock import MagicMock

import pytest

from exceptions import AutomationError
from os_primitives import MacOSPrimitives, normalize_key, quote_applescript, run_osascript


def _completed(stdout="", stderr="", returncode=0):
    return subprocess.CompletedProcess(args=["osascript"], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def gui(mocker):
    fake = MagicMock()
    mocker.patch.dict("sys.modules", {"pyautogui": fake})
    return fake


@pytest.fixture
def mac(gui):
    return MacOSPrimitives()


@pytest.mark.parametrize(
    "key, expected",
    [("Return", "enter"), ("cmd", "command"), ("option", "alt"), ("ArrowLeft", "left"), ("a", "a")],
)
def test_normalize_key(key, expected):
    assert normalize_key(key) == expected


def test_quote_applescript_escapes_quotes_and_backslashes():
    assert quote_applescript('say "hi" \\ bye') == '"say \\"hi\\" \\\\ bye"'


def test_run_osascript_returns_trimmed_output(mocker):
    run = mocker.patch("os_primitives.subprocess.run", return_value=_completed(stdout="Finder\n"))

    assert run_osascript("return 1") == "Finder"
    assert run.call_args.args[0] == ["osascript", "-e", "return 1"]


def test_run_osascript_failure_raises_with_stderr(mocker):
    mocker.patch(
        "os_primitives.subprocess.run",
        return_value=_completed(stderr="execution error: Not authorized (-1743)\n", returncode=1),
    )

    with pytest.raises(AutomationError, match="Not authorized"):
        run_osascript("tell application \"Finder\" to quit")


def test_run_osascript_timeout_raises(mocker):
    mocker.patch("os_primitives.subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="osascript", timeout=10))

    with pytest.raises(AutomationError, match="timed out"):
        run_osascript("delay 100")


def test_window_bounds_parses_position_and_size(mac, mocker):
    mocker.patch("os_primitives.subprocess.run", return_value=_completed(stdout="10, 25, 800, 600"))

    bounds = mac.window_bounds("Notes")

    assert (bounds.x, bounds.y, bounds.width, bounds.height) == (10, 25, 800, 600)


def test_window_bounds_none_when_app_has_no_window(mac, mocker):
    mocker.patch("os_primitives.subprocess.run", return_value=_completed(stderr="Invalid index.", returncode=1))

    assert mac.window_bounds("Finder") is None


def test_ui_elements_skips_unparseable_lines(mac, mocker):
    output = "AXButton|10|20|30|40\ngarbage\nAXTextField|0|0|missing value|20\nAXTextArea|5|5|100|100\n"
    mocker.patch("os_primitives.subprocess.run", return_value=_completed(stdout=output))

    elements = mac.ui_elements()

    assert [e.role for e in elements] == ["AXButton", "AXTextArea"]


def test_key_press_with_modifier_uses_hotkey(mac, gui):
    mac.key_press("Return", ("cmd",))
    mac.key_press("tab")

    gui.hotkey.assert_called_once_with("command", "enter")
    gui.press.assert_called_once_with("tab")


def test_pointer_failures_become_automation_errors(mac, gui):
    gui.click.side_effect = Exception("FailSafeException")

    with pytest.raises(AutomationError, match="Mouse click failed"):
        mac.click(1, 1)
