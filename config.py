import json
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

# Secret: stays in .env (API_KEY) or is passed on the command line.

# User config: loaded from project-root config.json (base)
# with ~/.analyst/config.json overlaid on top.
CONFIG_PATH = Path.home() / ".analyst" / "config.json"
_LOCAL_CONFIG_PATH = Path(__file__).resolve().parent / "config.json"
_user_config: dict = {}


def _load_config() -> dict:
    # Project-local config.json as base, user home config overlaid on top
    merged: dict = {}
    for path in (_LOCAL_CONFIG_PATH, CONFIG_PATH):
        if path is not None and path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    merged.update(json.load(f))
            except (json.JSONDecodeError, OSError):
                pass
    return merged


def get(key: str, default=None):
    """Get a config value by dot-separated key. E.g. get('chat.max_retries', 5)"""
    keys = key.split(".")
    val = _user_config
    for k in keys:
        if isinstance(val, dict):
            val = val.get(k)
        else:
            return default
    return val if val is not None else default


_user_config = _load_config()


# ---- Data directory -----------------------------------------------------------
# Single source of truth for the base data directory (logs, event logs).
# Priority: ANALYST_DIR env var > "data_dir" config key > ~/.analyst

_data_dir: Optional[Path] = None


def get_data_dir() -> Path:
    """Return the resolved base data directory.

    Resolution order:
    1. ``ANALYST_DIR`` environment variable (highest, useful for CI/Docker)
    2. ``"data_dir"`` key in config.json
    3. ``~/.analyst`` (default)
    """
    global _data_dir
    if _data_dir is not None:
        return _data_dir
    env_val = os.environ.get("ANALYST_DIR")
    if env_val:
        _data_dir = Path(env_val).expanduser().resolve()
    else:
        configured = get("data_dir")
        if configured:
            _data_dir = Path(configured).expanduser().resolve()
        else:
            _data_dir = Path.home() / ".analyst"
    return _data_dir


def _reset_data_dir() -> None:
    """Reset the cached data directory (for testing only)."""
    global _data_dir
    _data_dir = None


# ---- LLM endpoint ------------------------------------------------------------

def get_api_key(explicit: str | None = None) -> str:
    """Return the API key for the chat endpoint.

    An explicit value (e.g. ``--api-key``) wins over the ``API_KEY``
    environment variable. Local endpoints usually need no key, so the
    result may be an empty string.
    """
    if explicit:
        return explicit
    return os.getenv("API_KEY", "")


ENDPOINT_URL = get("endpoint_url", "")
MODEL = get("model", "")


# ---- Setting descriptions (single source of truth for help text) -------------
# Keys match config.json keys. Nested keys use dot notation (e.g. "chat.max_retries").
CONFIG_DESCRIPTIONS: dict[str, str] = {
    "endpoint_url": "Base URL of an OpenAI-compatible endpoint (e.g. http://localhost:11434/v1).",
    "model": "Model identifier sent with every chat completion request.",
    "data_dir": "Directory for logs and event logs. Overridden by the ANALYST_DIR environment variable.",
    "console_format": "Console log format: 'simple' (default), 'full', or 'clean' (no console output).",
    "chat": "Per-session tunables (context_window_tokens, max_retries, timeout_seconds, max_code_rounds, temperature, sandbox limits). See analyst/chat_config.py CONFIG_FIELD_SPECS.",
    "limits": "Override named limits (byte budgets, cumulative sandbox time). Keys are limit names (e.g. 'sandbox.max_cumulative_ms'). See analyst/limits.py DEFAULTS.",
}


def reload_config() -> None:
    """Re-read config from disk and reassign all module-level constants.

    Call this after writing config.json to make new values take effect
    without restarting. Running turns keep the ChatConfig they started with.
    """
    global _user_config
    global ENDPOINT_URL, MODEL

    load_dotenv(override=True)

    _user_config = _load_config()
    _reset_data_dir()

    ENDPOINT_URL = get("endpoint_url", "")
    MODEL = get("model", "")

    # Reload limit overrides from config
    from analyst.limits import reload as _reload_limits

    _reload_limits()
