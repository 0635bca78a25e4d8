"""Chat-completion requests with retry and cancellation.

Talks to any OpenAI-compatible ``/chat/completions`` endpoint using
``requests``. Each HTTP attempt runs on a worker thread; the caller polls
the future and checks the ``CancelToken`` between polls, so cancellation
is responsive even while the server is slow.

Retry decisions (status code → retry / raise) are a pure function kept
apart from the I/O loop.
"""

from __future__ import annotations

import json
import math
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field

import requests

from .cancellation import CancelToken, TurnCancelled, ensure_token
from .event_bus import LLM_RETRY, get_event_bus
from .limits import get_limit, trunc

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

OLLAMA_HINT = (
    "\nIf you're using Ollama, make sure your endpoint URL ends with /v1 "
    "(e.g., http://localhost:11434/v1)."
)

# Decisions returned by classify_status()
ACCEPT = "accept"
RETRY = "retry"
FAIL = "fail"

# Shared pool for HTTP attempts; abandoned futures finish on their own
_http_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="llm-http")


class LLMHTTPError(RuntimeError):
    """Non-2xx response from the endpoint."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        message = f"HTTP {status}: {body}"
        if status == 404:
            message += OLLAMA_HINT
        super().__init__(message)


class LLMProtocolError(ValueError):
    """Success response whose body is not the expected JSON."""


@dataclass
class Completion:
    """The parts of a chat-completion response the turn loop uses."""
    content: str
    finish_reason: str | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_json(cls, data) -> "Completion":
        if not isinstance(data, dict):
            raise LLMProtocolError(f"Expected a JSON object, got {type(data).__name__}")
        choices = data.get("choices") or []
        first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
        message = first.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return cls(
            content=content if isinstance(content, str) else "",
            finish_reason=first.get("finish_reason"),
            raw=data,
        )


# ---------------------------------------------------------------------------
# Pure retry policy
# ---------------------------------------------------------------------------

def classify_status(status: int, attempt: int, max_retries: int) -> str:
    """Map an HTTP status to ACCEPT, RETRY or FAIL for this attempt."""
    if 200 <= status < 300:
        return ACCEPT
    if status in RETRYABLE_STATUSES and attempt < max_retries:
        return RETRY
    return FAIL


def backoff_ms(attempt: int) -> int:
    """Exponential backoff: base * 2^attempt, capped."""
    return min(get_limit("llm.backoff_base_ms") * (2 ** attempt), get_limit("llm.backoff_cap_ms"))


def retry_delay_ms(status: int | None, attempt: int, retry_after: str | None = None) -> int:
    """Delay before the next attempt. 429 honours a numeric Retry-After (seconds)."""
    if status == 429 and retry_after is not None:
        try:
            seconds = float(retry_after)
        except ValueError:
            seconds = None
        if seconds is not None and math.isfinite(seconds) and seconds >= 0:
            return int(seconds * 1000)
    return backoff_ms(attempt)


def build_payload(
    model: str,
    system_prompt: str,
    messages: list[dict],
    temperature: float | None = None,
) -> dict:
    payload = {
        "model": model,
        "max_completion_tokens": get_limit("llm.max_completion_tokens"),
        "messages": [{"role": "system", "content": system_prompt}, *messages],
    }
    # Omitted unless set so the provider default applies
    if temperature is not None:
        payload["temperature"] = temperature
    return payload


def completions_url(endpoint_url: str) -> str:
    base = endpoint_url if endpoint_url.endswith("/") else endpoint_url + "/"
    return base + "chat/completions"


# ---------------------------------------------------------------------------
# I/O
# ---------------------------------------------------------------------------

def _wait_for(future: Future, token: CancelToken):
    """Block on *future*, checking *token* every poll interval."""
    poll = get_limit("llm.poll_ms") / 1000
    while True:
        if token.is_set():
            future.cancel()
            token.raise_if_set()
        try:
            return future.result(timeout=poll)
        except FutureTimeoutError:
            continue


def fetch_completion(
    endpoint_url: str,
    api_key: str,
    model: str,
    system_prompt: str,
    messages: list[dict],
    max_retries: int,
    token: CancelToken | None = None,
    temperature: float | None = None,
    *,
    http: requests.Session | None = None,
) -> Completion:
    """POST a chat completion, retrying transient failures.

    Args:
        endpoint_url: Base URL; ``chat/completions`` is appended.
        api_key: Sent as a Bearer token when non-empty.
        model: Model identifier.
        system_prompt: Prepended as the system message.
        messages: ``[{"role", "content"}, ...]`` conversation.
        max_retries: Extra attempts after the first (0 = single attempt).
        token: Cancellation token; aborts in-flight requests and backoff.
        temperature: Sampling temperature, omitted from the body when None.
        http: Optional ``requests.Session`` to send through.

    Raises:
        LLMHTTPError: non-retryable status, or retryable status on the last attempt.
        LLMProtocolError: 2xx response whose body is not JSON.
        requests.RequestException: network failure after all retries.
        TurnCancelled / TurnTimeout: the token fired.
    """
    token = ensure_token(token)
    url = completions_url(endpoint_url)
    payload = build_payload(model, system_prompt, messages, temperature)
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    sender = http if http is not None else requests
    bus = get_event_bus()

    last_error: Exception | None = None
    for attempt in range(max_retries + 1):
        token.raise_if_set()
        remaining = token.remaining()
        timeout = remaining + 1 if remaining is not None else None
        future = _http_pool.submit(sender.post, url, json=payload, headers=headers, timeout=timeout)
        try:
            response = _wait_for(future, token)
        except TurnCancelled:
            raise
        except requests.RequestException as e:
            last_error = e
            if attempt >= max_retries:
                break
            delay = backoff_ms(attempt)
            bus.emit(
                LLM_RETRY,
                level="warning",
                summary=f"[LLM] Network error, retrying in {delay} ms ({attempt + 1}/{max_retries}): {trunc(str(e))}",
                data={"attempt": attempt + 1, "delay_ms": delay, "error": str(e)},
            )
            token.sleep(delay / 1000)
            continue

        decision = classify_status(response.status_code, attempt, max_retries)
        if decision == ACCEPT:
            try:
                data = json.loads(response.text)
            except ValueError as e:
                raise LLMProtocolError(f"Invalid JSON in response body: {e}") from e
            return Completion.from_json(data)

        error = LLMHTTPError(response.status_code, response.text)
        if decision == FAIL:
            raise error
        last_error = error
        delay = retry_delay_ms(response.status_code, attempt, response.headers.get("Retry-After"))
        bus.emit(
            LLM_RETRY,
            level="warning",
            summary=f"[LLM] HTTP {response.status_code}, retrying in {delay} ms ({attempt + 1}/{max_retries})",
            data={"attempt": attempt + 1, "delay_ms": delay, "status": response.status_code},
        )
        token.sleep(delay / 1000)

    if last_error is None:
        raise RuntimeError("All retries exhausted")
    raise last_error
