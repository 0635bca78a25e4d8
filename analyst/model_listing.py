"""Provider detection and model listing.

Used by ``--list-models``. Anthropic and Gemini list models through their
own APIs; everything else is treated as OpenAI-compatible ``GET /models``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import quote, urlparse

import requests

from .limits import get_limit

ANTHROPIC = "anthropic"
GOOGLE_GEMINI = "google-gemini"
OPENAI_COMPAT = "openai-compat"

_PROVIDER_HOSTS = {
    "api.anthropic.com": ANTHROPIC,
    "generativelanguage.googleapis.com": GOOGLE_GEMINI,
}


@dataclass
class ModelListResult:
    success: bool
    models: list[str] = field(default_factory=list)
    error: str = ""


def detect_provider(endpoint: str) -> str:
    """Map an endpoint URL to a provider by hostname."""
    try:
        hostname = urlparse(endpoint).hostname or ""
    except ValueError:
        return OPENAI_COMPAT
    return _PROVIDER_HOSTS.get(hostname, OPENAI_COMPAT)


def _error_for_status(status: int) -> ModelListResult:
    if status in (401, 403):
        return ModelListResult(False, error="Authentication failed: check your API key")
    if status == 404:
        return ModelListResult(False, error="Endpoint does not support model listing: type a model name manually")
    return ModelListResult(False, error=f"Unexpected response: {status}")


def _request_spec(provider: str, base: str, api_key: str) -> tuple[str, dict]:
    headers = {"Accept": "application/json"}
    if provider == GOOGLE_GEMINI:
        return f"{base}/models?key={quote(api_key, safe='')}", headers
    if provider == ANTHROPIC:
        headers["anthropic-version"] = "2023-06-01"
        if api_key:
            headers["x-api-key"] = api_key
        return f"{base}/models", headers
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return f"{base}/models", headers


def _parse_models(provider: str, body) -> list[str] | None:
    if not isinstance(body, dict):
        return None
    if provider == GOOGLE_GEMINI:
        models = body.get("models")
        if not isinstance(models, list):
            return None
        return [str(m.get("name", "")).removeprefix("models/") for m in models if isinstance(m, dict)]
    data = body.get("data")
    if not isinstance(data, list):
        return None
    return [str(m.get("id", "")) for m in data if isinstance(m, dict)]


def fetch_models(
    endpoint_url: str,
    api_key: str = "",
    provider: str | None = None,
    timeout: float | None = None,
) -> ModelListResult:
    """List the models an endpoint offers. Never raises."""
    provider = provider or detect_provider(endpoint_url)
    timeout = timeout if timeout is not None else get_limit("llm.model_list_timeout_s")
    url, headers = _request_spec(provider, endpoint_url.rstrip("/"), api_key)

    try:
        response = requests.get(url, headers=headers, timeout=timeout)
    except requests.Timeout:
        return ModelListResult(False, error="Request timed out")
    except requests.RequestException:
        return ModelListResult(False, error="Could not reach endpoint")

    if not response.ok:
        return _error_for_status(response.status_code)
    try:
        body = response.json()
    except ValueError:
        body = None
    models = _parse_models(provider, body)
    if models is None:
        return ModelListResult(False, error="Unexpected response format from endpoint")
    return ModelListResult(True, models=models)
