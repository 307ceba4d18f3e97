import io
import json

import pytest

from automation_backend import BackendContext
from automation_server import AutomationServer, server_info
from tool_registry import build_registry


@pytest.fixture
def server(primitives):
    context = BackendContext(primitives=primitives, sleep=lambda seconds: None)
    return AutomationServer(context, build_registry(True, True, True), out=io.StringIO())


def _sent(server):
    return [json.loads(line) for line in server.out.getvalue().splitlines()]


def test_serve_announces_server_info_first(server):
    # ARRANGE
    requests = io.StringIO('{"type": "tool_call", "data": {"id": "a1", "name": "get_system_info", "params": {}}}\n')

    # ACT
    server.serve(requests)

    # ASSERT
    messages = _sent(server)
    assert messages[0]["type"] == "server_info"
    assert messages[0]["data"]["name"] == "Mac Control"
    assert [t["name"] for t in messages[0]["data"]["tools"]][0] == "get_current_state"
    assert messages[1]["type"] == "tool_result"
    assert messages[1]["data"]["id"] == "a1"


def test_tool_call_is_answered_with_matching_id(server):
    server.handle_line(json.dumps({"type": "tool_call", "data": {"id": "xyz", "name": "mouse_move", "params": {"x": 1, "y": 2}}}))

    assert _sent(server) == [{"type": "tool_result", "data": {"id": "xyz", "result": {"success": True}}}]


def test_unknown_tool_is_answered_not_dropped(server):
    server.handle_line(json.dumps({"type": "tool_call", "data": {"id": "1", "name": "nope", "params": {}}}))

    assert _sent(server)[0]["data"]["result"] == {"error": "Tool nope not found or disabled"}


@pytest.mark.parametrize(
    "line",
    [
        "this is not json",
        "[1, 2, 3]",
        '{"type": "tool_call", "data": {"name": "mouse_move"}}',
        '{"type": "tool_call", "data": {"id": "1"}}',
    ],
)
def test_malformed_requests_produce_error_message(server, line):
    server.handle_line(line)

    messages = _sent(server)
    assert len(messages) == 1
    assert messages[0]["type"] == "error"


@pytest.mark.parametrize(
    "data",
    [
        {"id": "1", "name": ["mouse_click"], "params": {}},
        {"id": "1", "name": {"tool": "mouse_click"}, "params": {}},
        {"id": ["1"], "name": "mouse_move", "params": {"x": 1, "y": 2}},
    ],
)
def test_non_string_id_or_name_is_rejected_and_serving_continues(server, data):
    # ARRANGE
    requests = io.StringIO(
        json.dumps({"type": "tool_call", "data": data})
        + "\n"
        + json.dumps({"type": "tool_call", "data": {"id": "next", "name": "mouse_move", "params": {"x": 1, "y": 2}}})
        + "\n"
    )

    # ACT
    server.serve(requests)

    # ASSERT
    messages = _sent(server)
    assert [m["type"] for m in messages] == ["server_info", "error", "tool_result"]
    assert messages[2]["data"]["id"] == "next"


def test_other_message_types_and_blank_lines_are_ignored(server):
    server.handle_line('{"type": "ping", "data": {}}')
    server.handle_line("   \n")

    assert server.out.getvalue() == ""


def test_server_info_lists_enabled_tools_only():
    info = server_info(build_registry(enable_applescript=False, enable_keyboard=False, enable_mouse=False))

    assert [t["name"] for t in info["tools"]] == ["get_current_state"]
    assert info["version"] == "1.0.0"
