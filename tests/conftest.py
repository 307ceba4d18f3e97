import pytest

from audit_logger import audit_log
from data_models import ModelConfig, UIElement, WindowGeometry
from planner import Planner
from tool_registry import build_registry
from tracer import global_tracer


@pytest.fixture(autouse=True)
def isolated_environment(mocker, tmp_path):
    """
    Runs thread-pool work inline, points the audit trail at a temp file and
    clears the call trace, so tests neither need a running hub nor touch the
    real audit log.
    """
    mocker.patch("eventlet.tpool.execute", side_effect=lambda fn, *args, **kwargs: fn(*args, **kwargs))
    mocker.patch.object(audit_log, "filepath", str(tmp_path / "audit_trail.csv"))
    mocker.patch.object(audit_log, "socketio", None)
    global_tracer.reset()
    yield


class FakePrimitives:
    """Records every OS call instead of performing it."""

    def __init__(self):
        self.frontmost = "Finder"
        self.running = {"Finder"}
        self.cursor = (10.0, 20.0)
        self.windows = {"Finder": WindowGeometry(x=0, y=0, width=800, height=600)}
        self.elements: list[UIElement] = []
        self.script_outputs: dict = {}
        # When False, activate() starts the app but never brings it to the front.
        self.activate_brings_front = True
        self.calls: list[tuple] = []

    def run_script(self, script):
        self.calls.append(("run_script", script))
        for fragment, output in self.script_outputs.items():
            if fragment in script:
                if isinstance(output, Exception):
                    raise output
                return output
        return ""

    def frontmost_app(self):
        return self.frontmost

    def is_running(self, app_name):
        return app_name in self.running

    def activate(self, app_name):
        self.calls.append(("activate", app_name))
        self.running.add(app_name)
        if self.activate_brings_front:
            self.frontmost = app_name

    def window_bounds(self, app_name):
        return self.windows.get(app_name)

    def ui_elements(self):
        return list(self.elements)

    def cursor_position(self):
        return self.cursor

    def move_mouse(self, x, y):
        self.calls.append(("move_mouse", x, y))
        self.cursor = (x, y)

    def click(self, x, y, button="left", clicks=1):
        self.calls.append(("click", x, y, button, clicks))

    def type_text(self, text):
        self.calls.append(("type_text", text))

    def key_press(self, key, modifiers=()):
        self.calls.append(("key_press", key, tuple(modifiers)))

    def hotkey(self, *keys):
        self.calls.append(("hotkey",) + keys)

    def pointer_calls(self):
        return [c for c in self.calls if c[0] in ("click", "move_mouse")]


class ScriptedModel:
    """A model backend that replays canned replies and records the messages it was sent."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls: list[list[dict]] = []

    def complete(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


DEFAULT_STATE = {
    "activeApplication": "Finder",
    "mousePosition": {"x": 5, "y": 6},
    "lastOperation": None,
    "windowPositions": {"Finder": {"x": 0, "y": 0, "width": 800, "height": 600}},
}


class FakeChannel:
    """Stands in for CommandChannel: answers tool calls from a table."""

    def __init__(self, results=None, registry=None):
        self.registry = registry or build_registry(True, True, True)
        self.results = {"get_current_state": dict(DEFAULT_STATE)}
        self.results.update(results or {})
        self.calls: list[tuple] = []
        self.is_ready = True
        self.started = False

    def tool_descriptors(self):
        return list(self.registry.list_tools())

    def list_tools(self):
        return self.registry.names()

    def start(self):
        self.started = True

    def wait_until_ready(self, retries=10, interval=0.5):
        return self.is_ready

    def call(self, tool, params=None, timeout=None):
        self.calls.append((tool, params or {}))
        result = self.results.get(tool, {"success": True})
        if callable(result):
            result = result(params or {})
        if isinstance(result, Exception):
            raise result
        return result

    def tool_calls(self):
        return [c for c in self.calls if c[0] != "get_current_state"]


@pytest.fixture
def primitives():
    return FakePrimitives()


@pytest.fixture
def scripted_planner():
    """Factory: scripted_planner([reply, ...], config=None) -> (Planner, ScriptedModel)."""

    def _make(replies, config=None):
        model = ScriptedModel(replies)
        config = config or ModelConfig(provider="openai", model="gpt-4o")
        planner = Planner(config, backend_factory=lambda config: model)
        return planner, model

    return _make


@pytest.fixture
def fake_channel():
    """Factory: fake_channel({tool: result}) -> FakeChannel."""
    return FakeChannel
