"""Tests for the chat-completion client: retry policy, errors and cancellation."""

from __future__ import annotations

import threading
import time

import pytest

from analyst.cancellation import CancelToken, TurnCancelled, TurnTimeout
from analyst.event_bus import LLM_RETRY
from analyst.llm_client import (
    ACCEPT,
    FAIL,
    OLLAMA_HINT,
    RETRY,
    LLMHTTPError,
    LLMProtocolError,
    backoff_ms,
    build_payload,
    classify_status,
    completions_url,
    fetch_completion,
    retry_delay_ms,
)
from conftest import ScriptedResponse, reply

MESSAGES = [{"role": "user", "content": "How many rows?"}]


def _fetch(server, max_retries: int = 3, **kwargs):
    return fetch_completion(
        server.url, "sk-test", "test-model", "You are a REPL.", MESSAGES, max_retries, **kwargs
    )


class TestRetryPolicy:
    def test_classify_status(self) -> None:
        assert classify_status(200, 0, 3) == ACCEPT
        assert classify_status(503, 0, 3) == RETRY
        assert classify_status(429, 2, 3) == RETRY
        assert classify_status(429, 3, 3) == FAIL
        assert classify_status(400, 0, 3) == FAIL
        assert classify_status(404, 0, 3) == FAIL

    def test_backoff_doubles_and_caps(self) -> None:
        assert [backoff_ms(a) for a in range(7)] == [1000, 2000, 4000, 8000, 16000, 30000, 30000]

    def test_retry_after_only_for_429(self) -> None:
        assert retry_delay_ms(429, 0, "2") == 2000
        assert retry_delay_ms(429, 1, "soon") == 2000
        assert retry_delay_ms(503, 0, "5") == 1000

    def test_non_finite_retry_after_falls_back_to_backoff(self) -> None:
        assert retry_delay_ms(429, 0, "inf") == 1000
        assert retry_delay_ms(429, 1, "Infinity") == 2000
        assert retry_delay_ms(429, 0, "1e400") == 1000
        assert retry_delay_ms(429, 0, "nan") == 1000
        assert retry_delay_ms(429, 0, "-1") == 1000


def test_payload_omits_unset_temperature() -> None:
    payload = build_payload("m", "sys", MESSAGES)
    assert "temperature" not in payload
    assert payload["messages"][0] == {"role": "system", "content": "sys"}
    assert payload["messages"][1:] == MESSAGES
    assert build_payload("m", "sys", MESSAGES, temperature=0.0)["temperature"] == 0.0


def test_completions_url_joins_path() -> None:
    assert completions_url("http://h/v1") == "http://h/v1/chat/completions"
    assert completions_url("http://h/v1/") == "http://h/v1/chat/completions"


class TestFetchCompletion:
    def test_success_sends_request_shape(self, llm_server) -> None:
        llm_server.script(reply("print(2)"))

        completion = _fetch(llm_server, temperature=0.3)

        assert completion.content == "print(2)"
        assert completion.finish_reason == "stop"
        request = llm_server.requests[0]
        assert request["path"] == "/v1/chat/completions"
        assert request["headers"]["Authorization"] == "Bearer sk-test"
        assert request["body"]["model"] == "test-model"
        assert request["body"]["temperature"] == 0.3
        assert request["body"]["max_completion_tokens"] == 4096

    def test_server_error_then_success(self, llm_server, fast_backoff, events) -> None:
        llm_server.script(ScriptedResponse(500, "overloaded"), reply("second"))

        completion = _fetch(llm_server)

        assert completion.content == "second"
        assert len(llm_server.requests) == 2
        assert [e.type for e in events] == [LLM_RETRY]

    def test_retries_exhausted_raises_last_status(self, llm_server, fast_backoff) -> None:
        llm_server.script(*[ScriptedResponse(503, "busy") for _ in range(3)])

        with pytest.raises(LLMHTTPError) as exc_info:
            _fetch(llm_server, max_retries=2)

        assert exc_info.value.status == 503
        assert len(llm_server.requests) == 3

    def test_404_includes_endpoint_hint(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(404, "not found"))

        with pytest.raises(LLMHTTPError) as exc_info:
            _fetch(llm_server)

        assert str(exc_info.value) == "HTTP 404: not found" + OLLAMA_HINT
        assert len(llm_server.requests) == 1

    def test_client_error_is_not_retried(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(401, '{"error": "bad key"}'))
        with pytest.raises(LLMHTTPError, match="HTTP 401"):
            _fetch(llm_server)
        assert len(llm_server.requests) == 1

    def test_malformed_json_is_not_retried(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(200, "{not json"), reply("unused"))

        with pytest.raises(LLMProtocolError):
            _fetch(llm_server)

        assert len(llm_server.requests) == 1

    def test_missing_content_reads_as_empty(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(200, {"choices": []}))
        completion = _fetch(llm_server)
        assert completion.content == ""
        assert completion.finish_reason is None

    def test_429_honours_retry_after(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(429, "slow down", headers={"Retry-After": "1"}), reply("ok"))

        start = time.monotonic()
        completion = _fetch(llm_server)
        elapsed = time.monotonic() - start

        assert completion.content == "ok"
        assert len(llm_server.requests) == 2
        assert elapsed >= 0.9

    def test_overflowing_retry_after_uses_backoff(self, llm_server, fast_backoff, events) -> None:
        llm_server.script(ScriptedResponse(429, "slow down", headers={"Retry-After": "1e400"}), reply("ok"))

        completion = _fetch(llm_server, max_retries=1)

        assert completion.content == "ok"
        assert events[0].data["delay_ms"] == 10

    def test_no_attempts_raises(self, llm_server) -> None:
        with pytest.raises(RuntimeError, match="All retries exhausted"):
            _fetch(llm_server, max_retries=-1)
        assert llm_server.requests == []

    def test_cancel_during_backoff(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(429, "slow down", headers={"Retry-After": "30"}))
        token = CancelToken()
        threading.Timer(0.2, token.cancel).start()

        start = time.monotonic()
        with pytest.raises(TurnCancelled) as exc_info:
            _fetch(llm_server, token=token)

        assert time.monotonic() - start < 5
        assert not isinstance(exc_info.value, TurnTimeout)
        assert len(llm_server.requests) == 1

    def test_cancel_while_request_in_flight(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(200, {"choices": []}, delay=3))
        token = CancelToken()
        threading.Timer(0.2, token.cancel).start()

        start = time.monotonic()
        with pytest.raises(TurnCancelled):
            _fetch(llm_server, token=token)
        assert time.monotonic() - start < 2

    def test_deadline_raises_timeout(self, llm_server) -> None:
        llm_server.script(ScriptedResponse(200, {"choices": []}, delay=3))
        token = CancelToken(timeout_seconds=0.3)

        with pytest.raises(TurnTimeout, match="timed out"):
            _fetch(llm_server, token=token)

    def test_network_error_retries_then_raises(self, fast_backoff) -> None:
        import requests

        with pytest.raises(requests.ConnectionError):
            fetch_completion("http://127.0.0.1:9/v1", "", "m", "sys", MESSAGES, 1)
