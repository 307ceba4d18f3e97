"""
Adapters for the language-model services the planner can talk to.

Each backend takes the provider-neutral message list (role/content dicts,
system prompt first) and returns the model's raw reply text. Transport and
HTTP failures become ModelBackendError; a successful response that carries
no usable text becomes UnprocessableResponseError.
"""
import logging
from typing import Any, Optional

import google.generativeai as genai
import requests

from config import (
    LLM_API_URL,
    LLM_PROVIDERS,
    MODEL_MAX_TOKENS,
    MODEL_REQUEST_TIMEOUT_SECONDS,
    MODEL_TEMPERATURE,
    OLLAMA_API_URL,
    OLLAMA_TAGS_URL,
    PROVIDER_CHECK_TIMEOUT_SECONDS,
)
from data_models import ModelConfig
from exceptions import ModelBackendError, UnprocessableResponseError
from tracer import trace

Messages = list[dict[str, str]]


class ModelBackend:
    """Base class. Subclasses implement complete()."""

    provider = "base"

    def __init__(self, config: ModelConfig, http: Any = None):
        self.config = config
        self.http = http or requests

    def complete(self, messages: Messages) -> str:
        raise NotImplementedError


class OpenAIBackend(ModelBackend):
    """OpenAI-compatible chat completions over HTTPS with a bearer credential."""

    provider = "openai"

    @trace
    def complete(self, messages: Messages) -> str:
        api_key = self.config.api_key.get_secret_value()
        if not api_key:
            raise ModelBackendError("OpenAI API key is not configured")
        payload = {
            "model": self.config.model,
            "messages": messages,
            "temperature": MODEL_TEMPERATURE,
            "max_tokens": MODEL_MAX_TOKENS,
            "response_format": {"type": "json_object"},
        }
        try:
            res = self.http.post(
                self.config.base_url or LLM_API_URL,
                json=payload,
                headers={"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"},
                timeout=MODEL_REQUEST_TIMEOUT_SECONDS,
            )
        except requests.exceptions.RequestException as e:
            raise ModelBackendError(f"Failed to call OpenAI: {e}") from e
        if not res.ok:
            raise ModelBackendError(f"OpenAI API error: {res.status_code}")
        try:
            content = res.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UnprocessableResponseError(res.text, "OpenAI response had no message content") from e
        if not isinstance(content, str):
            raise UnprocessableResponseError(res.text, "OpenAI response had no message content")
        return content


class OllamaBackend(ModelBackend):
    """A locally running Ollama server. Needs a model name only."""

    provider = "ollama"

    @trace
    def complete(self, messages: Messages) -> str:
        payload = {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": MODEL_TEMPERATURE},
        }
        try:
            res = self.http.post(
                self.config.base_url or OLLAMA_API_URL,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=MODEL_REQUEST_TIMEOUT_SECONDS,
            )
        except requests.exceptions.RequestException as e:
            raise ModelBackendError(
                f"Failed to call Ollama: {e}. Make sure Ollama is installed and running locally."
            ) from e
        if not res.ok:
            raise ModelBackendError(
                f"Failed to call Ollama: Ollama API error: {res.status_code}. "
                "Make sure Ollama is installed and running locally."
            )
        try:
            content = res.json()["message"]["content"]
        except (ValueError, KeyError, TypeError) as e:
            raise UnprocessableResponseError(res.text, "Ollama response had no message content") from e
        if not isinstance(content, str):
            raise UnprocessableResponseError(res.text, "Ollama response had no message content")
        return content


class GeminiBackend(ModelBackend):
    """
    Google Gemini through the google-generativeai SDK.

    The system prompt becomes the model's system_instruction and the history
    is mapped onto Gemini's 'user' and 'model' roles.
    """

    provider = "gemini"

    def __init__(self, config: ModelConfig, http: Any = None, sdk: Any = None):
        super().__init__(config, http)
        self.sdk = sdk or genai

    @staticmethod
    def to_contents(messages: Messages) -> tuple[str, list[dict]]:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [m["content"]]}
            for m in messages
            if m["role"] != "system"
        ]
        return system, contents

    @trace
    def complete(self, messages: Messages) -> str:
        api_key = self.config.api_key.get_secret_value()
        if not api_key:
            raise ModelBackendError("Gemini API key is not configured")
        system, contents = self.to_contents(messages)
        try:
            self.sdk.configure(api_key=api_key)
            model = self.sdk.GenerativeModel(
                model_name=self.config.model,
                system_instruction=system or None,
                generation_config={
                    "temperature": MODEL_TEMPERATURE,
                    "max_output_tokens": MODEL_MAX_TOKENS,
                    "response_mime_type": "application/json",
                },
            )
            response = model.generate_content(contents)
        except Exception as e:
            raise ModelBackendError(f"Failed to call Gemini: {e}") from e
        try:
            return response.text
        except (ValueError, AttributeError) as e:
            # The SDK raises ValueError when the candidate was blocked or empty.
            raise UnprocessableResponseError(str(response), "Gemini response had no text") from e


BACKENDS: dict[str, type[ModelBackend]] = {
    "openai": OpenAIBackend,
    "ollama": OllamaBackend,
    "gemini": GeminiBackend,
}


def build_backend(config: ModelConfig) -> ModelBackend:
    backend_cls = BACKENDS.get(config.provider)
    if backend_cls is None:
        raise ValueError(f"Unknown provider: {config.provider}")
    return backend_cls(config)


@trace
def check_provider_availability(provider: str, api_key: Optional[str] = None, http: Any = None) -> dict:
    """
    Reports whether a provider can be used right now.

    The local provider is probed over HTTP and also reports its installed
    models; remote providers only need a credential.
    """
    http = http or requests
    if provider not in LLM_PROVIDERS:
        return {"available": False, "models": [], "message": f"Unknown provider: {provider}"}

    if provider == "ollama":
        try:
            res = http.get(OLLAMA_TAGS_URL, headers={"Content-Type": "application/json"}, timeout=PROVIDER_CHECK_TIMEOUT_SECONDS)
        except requests.exceptions.RequestException as e:
            logging.warning(f"Ollama availability check failed: {e}")
            return {
                "available": False,
                "models": [],
                "error": str(e),
                "message": "Ollama is not running or not available at localhost:11434. Make sure Ollama is installed and running.",
            }
        if not res.ok:
            return {"available": False, "models": [], "error": f"Server returned {res.status_code}", "message": f"Server returned {res.status_code}"}
        try:
            models = res.json().get("models") or []
        except ValueError:
            models = []
        names = [m.get("name") if isinstance(m, dict) else str(m) for m in models]
        return {"available": True, "models": names, "message": f"Found {len(names)} local models"}

    name = LLM_PROVIDERS[provider]["name"]
    if api_key:
        return {"available": True, "models": list(LLM_PROVIDERS[provider]["models"]), "message": f"{name} API key is set"}
    return {"available": False, "models": [], "message": f"{name} requires an API key"}
