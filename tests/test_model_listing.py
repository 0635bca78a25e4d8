"""Tests for provider detection and model listing."""

from __future__ import annotations

import pytest

from analyst.model_listing import (
    ANTHROPIC,
    GOOGLE_GEMINI,
    OPENAI_COMPAT,
    detect_provider,
    fetch_models,
)
from conftest import ScriptedResponse


@pytest.mark.parametrize(
    ("endpoint", "provider"),
    [
        ("https://api.anthropic.com/v1", ANTHROPIC),
        ("https://generativelanguage.googleapis.com/v1beta", GOOGLE_GEMINI),
        ("https://api.openai.com/v1", OPENAI_COMPAT),
        ("http://localhost:11434/v1", OPENAI_COMPAT),
        ("not a url", OPENAI_COMPAT),
    ],
)
def test_detect_provider(endpoint, provider) -> None:
    assert detect_provider(endpoint) == provider


def test_openai_compatible_listing(llm_server) -> None:
    llm_server.script(ScriptedResponse(200, {"data": [{"id": "qwen2.5-coder"}, {"id": "llama3"}]}))

    result = fetch_models(llm_server.url, "sk-test")

    assert result.success
    assert result.models == ["qwen2.5-coder", "llama3"]
    request = llm_server.requests[0]
    assert request["method"] == "GET"
    assert request["path"] == "/v1/models"
    assert request["headers"]["Authorization"] == "Bearer sk-test"


def test_anthropic_headers(llm_server) -> None:
    llm_server.script(ScriptedResponse(200, {"data": [{"id": "claude-x"}]}))

    result = fetch_models(llm_server.url, "key", provider=ANTHROPIC)

    assert result.models == ["claude-x"]
    headers = llm_server.requests[0]["headers"]
    assert headers["x-api-key"] == "key"
    assert headers["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in headers


def test_gemini_key_in_query_and_prefix_stripped(llm_server) -> None:
    llm_server.script(ScriptedResponse(200, {"models": [{"name": "models/gemini-pro"}]}))

    result = fetch_models(llm_server.url, "k&y", provider=GOOGLE_GEMINI)

    assert result.models == ["gemini-pro"]
    assert llm_server.requests[0]["path"] == "/v1/models?key=k%26y"


@pytest.mark.parametrize(
    ("status", "error"),
    [
        (401, "Authentication failed: check your API key"),
        (403, "Authentication failed: check your API key"),
        (404, "Endpoint does not support model listing: type a model name manually"),
        (500, "Unexpected response: 500"),
    ],
)
def test_error_statuses(llm_server, status, error) -> None:
    llm_server.script(ScriptedResponse(status, "nope"))
    result = fetch_models(llm_server.url)
    assert not result.success
    assert result.error == error


def test_unexpected_body(llm_server) -> None:
    llm_server.script(ScriptedResponse(200, "[1, 2]"))
    assert fetch_models(llm_server.url).error == "Unexpected response format from endpoint"


def test_unreachable_endpoint() -> None:
    result = fetch_models("http://127.0.0.1:9/v1", timeout=2)
    assert not result.success
    assert result.error == "Could not reach endpoint"


def test_slow_endpoint_times_out(llm_server) -> None:
    llm_server.script(ScriptedResponse(200, {"data": []}, delay=2))
    assert fetch_models(llm_server.url, timeout=0.3).error == "Request timed out"
