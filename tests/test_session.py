"""Tests for ChatSession: outcomes as values, cancellation and supersession."""

from __future__ import annotations

import threading
import time

import pytest

from analyst.chat_config import ChatConfig
from analyst.event_bus import ERROR_LOG, TURN_CANCELLED, TURN_ERROR
from analyst.orchestrator import NO_USABLE_RESPONSE_TEXT
from analyst.session import CANCELLED, SUPERSEDED, ChatSession
from analyst.types import EndpointSettings, SandboxResult, UserEntry
from conftest import FakeInterpreter, ScriptedResponse, reply


@pytest.fixture()
def session(llm_server, allowed_dir, bus, sandbox_lock):
    return ChatSession(
        EndpointSettings(endpoint_url=llm_server.url, model="test-model"),
        allowed_dir,
        ChatConfig(max_retries=1),
        interpreter=FakeInterpreter(lambda code: SandboxResult(success=True, prints=[f"ran {code}\n"])),
        sandbox_lock=sandbox_lock,
        event_bus=bus,
    )


def _wait_for_requests(server, n: int, timeout: float = 5.0) -> None:
    end = time.monotonic() + timeout
    while len(server.requests) < n:
        if time.monotonic() > end:
            raise AssertionError(f"expected {n} request(s), saw {len(server.requests)}")
        time.sleep(0.01)


def test_successful_turn(session, llm_server) -> None:
    llm_server.script(reply("print(1)"))

    result = session.send_message("hello")

    assert result.success
    assert result.text == "ran print(1)\n"
    assert len(result.steps) == 1
    assert len(session.history) == 4


def test_cancel_returns_cancelled(session, llm_server, events) -> None:
    llm_server.script(ScriptedResponse(200, {"choices": []}, delay=3))
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.update(result=session.send_message("slow")))
    worker.start()
    _wait_for_requests(llm_server, 1)

    session.cancel()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert not outcome["result"].success
    assert outcome["result"].error == CANCELLED
    assert TURN_CANCELLED in [e.type for e in events]


def test_new_message_cancels_in_flight_one(session, llm_server) -> None:
    llm_server.script(ScriptedResponse(200, {"choices": []}, delay=3), reply("print(2)"))
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.update(result=session.send_message("first")))
    worker.start()
    _wait_for_requests(llm_server, 1)

    second = session.send_message("second")
    worker.join(timeout=5)

    assert second.success
    assert second.text == "ran print(2)\n"
    assert outcome["result"].error == CANCELLED


def test_endpoint_error_is_reported(session, llm_server, events) -> None:
    llm_server.script(ScriptedResponse(400, "bad request"))

    result = session.send_message("hello")

    assert not result.success
    assert result.error == "HTTP 400: bad request"
    assert not result.is_timeout
    errors = [e for e in events if e.type == TURN_ERROR]
    assert len(errors) == 1
    assert errors[0].data == {"error": "HTTP 400: bad request", "is_timeout": False}
    assert ERROR_LOG in [e.type for e in events]


def test_timeout_is_flagged(session, llm_server) -> None:
    llm_server.script(ScriptedResponse(200, {"choices": []}, delay=3))

    result = session.send_message("slow", ChatConfig(timeout_seconds=1))

    assert not result.success
    assert result.is_timeout
    assert result.error == "Request timed out after 1s"


def test_reset_clears_conversation(session, llm_server) -> None:
    llm_server.script(reply('peek_table("a.csv")\nprint(1)'))
    session.send_message("hello")
    assert session.history and session.facts

    session.reset()

    assert session.history == []
    assert session.facts == []
    assert session.orchestrator.last_sent_messages is None


def test_cancel_mid_execution_leaves_only_user_entry(session, llm_server) -> None:
    entered, release = threading.Event(), threading.Event()

    def run(code):
        entered.set()
        release.wait(5)
        return SandboxResult(success=True, prints=["late\n"])

    session.orchestrator.interpreter = FakeInterpreter(run)
    llm_server.script(reply("print('late')"))
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.update(result=session.send_message("q")))
    worker.start()
    assert entered.wait(5)

    session.cancel()
    release.set()
    worker.join(timeout=5)

    assert outcome["result"].error == CANCELLED
    assert session.history == [UserEntry(content="q")]
    assert session.facts == []


def test_late_failure_of_superseded_request(session, llm_server) -> None:
    entered, release = threading.Event(), threading.Event()

    def run(code):
        entered.set()
        release.wait(5)
        raise RuntimeError("interpreter crashed")

    session.orchestrator.interpreter = FakeInterpreter(run)
    llm_server.script(reply("print('first')"), reply(""))
    outcome = {}
    worker = threading.Thread(target=lambda: outcome.update(result=session.send_message("first")))
    worker.start()
    assert entered.wait(5)

    second = session.send_message("second")
    release.set()
    worker.join(timeout=5)

    assert second.success
    assert second.text == NO_USABLE_RESPONSE_TEXT
    assert not outcome["result"].success
    assert outcome["result"].error == SUPERSEDED
