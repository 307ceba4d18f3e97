import os


def _env_flag(name: str) -> bool:
    """A feature flag is on unless the variable is literally 'false'."""
    return os.getenv(name, "true").strip().lower() != "false"


# --- Feature flags for the tool catalog ---
ENABLE_MOUSE_CONTROL = _env_flag("ENABLE_MOUSE_CONTROL")
ENABLE_KEYBOARD_CONTROL = _env_flag("ENABLE_KEYBOARD_CONTROL")
ENABLE_APPLESCRIPT = _env_flag("ENABLE_APPLESCRIPT")

# --- Remote model (OpenAI-compatible) ---
LLM_API_KEY = os.getenv("LLM_API_KEY", "")
LLM_API_URL = os.getenv("LLM_API_URL", "https://api.openai.com/v1/chat/completions")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o")

# --- Local model (Ollama) ---
OLLAMA_API_URL = os.getenv("OLLAMA_API_URL", "http://localhost:11434/api/chat")
OLLAMA_TAGS_URL = os.getenv("OLLAMA_TAGS_URL", "http://localhost:11434/api/tags")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "llama3")
USE_LOCAL_LLM = os.getenv("USE_LOCAL_LLM", "false").lower() == "true"

# --- Gemini ---
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-pro")

MODEL_TEMPERATURE = 0.1
MODEL_MAX_TOKENS = 500
MODEL_REQUEST_TIMEOUT_SECONDS = 60
PROVIDER_CHECK_TIMEOUT_SECONDS = 2

LLM_PROVIDERS = {
    "openai": {
        "name": "OpenAI",
        "models": ["gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo"],
        "requiresKey": True,
        "apiUrl": LLM_API_URL,
    },
    "ollama": {
        "name": "Ollama (Local)",
        "models": ["llama3", "mistral", "codellama", "gemma", "phi", "nous-hermes"],
        "requiresKey": False,
        "apiUrl": OLLAMA_API_URL,
    },
    "gemini": {
        "name": "Google Gemini",
        "models": ["gemini-1.5-pro", "gemini-1.5-flash", "gemini-2.0-flash"],
        "requiresKey": True,
        "apiUrl": None,
    },
}

DEFAULT_PROVIDER = "ollama" if USE_LOCAL_LLM else "openai"
DEFAULT_MODEL = OLLAMA_MODEL if USE_LOCAL_LLM else LLM_MODEL

# --- Command channel ---
COMMAND_TIMEOUT_SECONDS = 10.0
BACKEND_READY_RETRIES = 10
BACKEND_READY_POLL_SECONDS = 0.5
BACKEND_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "automation_server.py")
BACKEND_NAME = "Mac Control"
BACKEND_DESCRIPTION = "Control macOS via AppleScript and keyboard/mouse automation"
BACKEND_VERSION = "1.0.0"

# --- Sessions ---
MAX_HISTORY_MESSAGES = 20
MAX_ACTIVE_CONTEXTS = 5
SESSION_MAX_AGE_SECONDS = 2 * 60 * 60
SESSION_SWEEP_INTERVAL_SECONDS = 60 * 60

# --- Orchestration ---
MAX_ORCHESTRATION_STEPS = int(os.getenv("MAX_ORCHESTRATION_STEPS", "10"))

# --- Automation backend ---
OSASCRIPT_TIMEOUT_SECONDS = 10
CLICK_PROXIMITY_RADIUS = 20
LAUNCH_RETRIES = 10
LAUNCH_POLL_INTERVAL_SECONDS = 0.5

# --- Tracing and audit ---
TRACE_MAX_ENTRIES = 500
AUDIT_LOG_PATH = os.getenv(
    "AUDIT_LOG_PATH", os.path.join(os.path.dirname(os.path.abspath(__file__)), ".sandbox", "audit_trail.csv")
)

DEBUG_MODE = os.getenv("DEBUG_MODE", "false").lower() == "true"

# Server configuration
SERVER_PORT = int(os.getenv("PORT", "3000"))
