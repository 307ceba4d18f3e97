from unittest.mock import MagicMock

import pytest
from pydantic import SecretStr

import events
from app import Services, create_app
from data_models import ModelConfig
from session_store import SessionStore

DONE = '{"tool": "get_current_state", "params": {}, "explanation": "Check state", "isCompleted": true}'


@pytest.fixture
def services(scripted_planner, fake_channel):
    planner, _ = scripted_planner(
        [DONE, DONE], config=ModelConfig(provider="openai", model="gpt-4o", api_key=SecretStr("sk-current"))
    )
    return Services(channel=fake_channel(), planner=planner, store=SessionStore())


@pytest.fixture
def app_and_socketio(services):
    app, socketio = create_app(services)
    app.config["TESTING"] = True
    return app, socketio


@pytest.fixture
def client(app_and_socketio):
    return app_and_socketio[0].test_client()


# --- /api/llm-control ---


def test_llm_control_runs_the_instruction(client, services):
    res = client.post("/api/llm-control", json={"prompt": "what is open?", "sessionId": "abc"})

    assert res.status_code == 200
    body = res.get_json()
    assert body["isCompleted"] is True
    assert body["hasNextSteps"] is False
    assert "Operation: Check state" in body["result"]
    assert "abc" in services.store


def test_llm_control_defaults_the_session_id(client, services):
    client.post("/api/llm-control", json={"prompt": "hello"})

    assert "default" in services.store


@pytest.mark.parametrize("body", [{}, {"prompt": ""}, {"prompt": "   "}])
def test_llm_control_rejects_empty_prompt(client, body):
    res = client.post("/api/llm-control", json=body)

    assert res.status_code == 400
    assert res.get_json() == {"error": "Empty request"}


def test_llm_control_reports_backend_not_ready(client, services):
    services.channel.is_ready = False

    res = client.post("/api/llm-control", json={"prompt": "hello"})

    assert res.status_code == 500
    assert res.get_json() == {"error": "Automation backend is not ready"}
    assert services.channel.started is True


def test_llm_control_reports_model_errors(client, services):
    services.planner._binding[1].replies = [RuntimeError("model exploded")]

    res = client.post("/api/llm-control", json={"prompt": "hello"})

    assert res.status_code == 500
    assert "model exploded" in res.get_json()["error"]


# --- /api/llm-control/status ---


def test_status_reports_backend_tools_and_model(client):
    body = client.get("/api/llm-control/status").get_json()

    assert body["status"] == "active"
    assert "open_application" in body["tools"]
    assert body["llm"]["provider"] == "openai"
    assert body["llm"]["model"] == "gpt-4o"
    assert set(body["llm"]["available_providers"]) == {"openai", "ollama", "gemini"}
    assert "sk-current" not in str(body)


def test_status_inactive_when_backend_down(client, services):
    services.channel.is_ready = False

    assert client.get("/api/llm-control/status").get_json()["status"] == "inactive"


# --- /api/llm-control/config ---


def test_config_switches_to_local_provider_and_refreshes_models(client, services, mocker):
    # ARRANGE
    check = mocker.patch(
        "app.check_provider_availability",
        return_value={"available": True, "models": ["llama3:latest", "qwen2"], "message": "Found 2 local models"},
    )

    # ACT
    res = client.post("/api/llm-control/config", json={"provider": "ollama"})

    # ASSERT
    assert res.status_code == 200
    assert res.get_json()["provider"] == "ollama"
    assert res.get_json()["model"] == "llama3:latest"
    assert services.providers["ollama"]["models"] == ["llama3:latest", "qwen2"]
    assert services.planner.config.api_key.get_secret_value() == ""
    check.assert_called_once_with("ollama", "")


def test_config_rejects_unavailable_provider(client, services, mocker):
    mocker.patch(
        "app.check_provider_availability",
        return_value={"available": False, "models": [], "message": "Google Gemini requires an API key"},
    )

    res = client.post("/api/llm-control/config", json={"provider": "gemini"})

    assert res.status_code == 400
    assert res.get_json() == {"error": "Google Gemini not available", "message": "Google Gemini requires an API key"}
    assert services.planner.config.provider == "openai"


def test_config_uses_supplied_key_for_new_provider(client, services, mocker):
    mocker.patch("app.check_provider_availability", return_value={"available": True, "models": [], "message": "ok"})

    res = client.post("/api/llm-control/config", json={"provider": "gemini", "model": "gemini-1.5-flash", "apiKey": "g-123"})

    assert res.status_code == 200
    assert services.planner.config.provider == "gemini"
    assert services.planner.config.model == "gemini-1.5-flash"
    assert services.planner.config.api_key.get_secret_value() == "g-123"


def test_config_model_change_keeps_current_key(client, services, mocker):
    check = mocker.patch("app.check_provider_availability")

    res = client.post("/api/llm-control/config", json={"model": "gpt-4-turbo"})

    assert res.status_code == 200
    assert services.planner.config.model == "gpt-4-turbo"
    assert services.planner.config.api_key.get_secret_value() == "sk-current"
    check.assert_not_called()


@pytest.mark.parametrize(
    "body, error",
    [
        ({"provider": "skynet"}, "Unknown provider: skynet"),
        ({"model": "gpt-7"}, "Model gpt-7 not available for OpenAI"),
    ],
)
def test_config_rejects_invalid_choices(client, services, body, error):
    res = client.post("/api/llm-control/config", json=body)

    assert res.status_code == 400
    assert res.get_json()["error"] == error
    assert services.planner.config.model == "gpt-4o"


# --- Other routes ---


def test_check_ollama_returns_probe_result(client, mocker):
    mocker.patch("app.check_provider_availability", return_value={"available": False, "models": [], "message": "down"})

    res = client.get("/api/llm-control/check-ollama")

    assert res.status_code == 200
    assert res.get_json()["available"] is False


def test_trace_endpoint_returns_recent_calls(client):
    client.get("/api/llm-control/status")

    body = client.get("/api/llm-control/trace?limit=2").get_json()

    # The trace request itself is the newest entry.
    assert len(body["trace"]) == 2
    assert body["trace"][0]["function"].endswith("llm_status")
    assert body["trace"][1]["function"].endswith("get_trace")


# --- Socket.IO ---


def test_start_task_with_empty_prompt_reports_error(app_and_socketio):
    app, socketio = app_and_socketio
    sio_client = socketio.test_client(app)

    sio_client.emit("start_task", {"prompt": ""})

    received = sio_client.get_received()
    assert {"name": "log_message", "args": [{"type": "error", "data": "Empty request"}], "namespace": "/"} in received


def test_get_trace_log_responds_to_requester(app_and_socketio):
    app, socketio = app_and_socketio
    sio_client = socketio.test_client(app)

    sio_client.emit("get_trace_log")

    names = [m["name"] for m in sio_client.get_received()]
    assert "trace_log_response" in names


def test_run_task_emits_task_result(services):
    socketio = MagicMock()

    events.run_task(socketio, services, "sock-1", "what is open?", "room-1")

    name, payload = socketio.emit.call_args_list[-1].args
    assert name == "task_result"
    assert payload["isCompleted"] is True
    assert socketio.emit.call_args_list[-1].kwargs == {"to": "room-1"}


def test_run_task_reports_failures_as_log_messages(services):
    socketio = MagicMock()
    services.planner._binding[1].replies = [RuntimeError("boom")]

    events.run_task(socketio, services, "sock-1", "hello", "room-1")

    socketio.emit.assert_called_with(
        "log_message", {"type": "error", "data": "An error occurred while running the instruction: boom"}, to="room-1"
    )
