"""Tests for CancelToken."""

from __future__ import annotations

import threading
import time

import pytest

from analyst.cancellation import CancelToken, TurnCancelled, TurnTimeout, ensure_token


def test_fresh_token_is_not_set() -> None:
    token = CancelToken()
    assert not token.is_set()
    assert token.remaining() is None
    token.raise_if_set()


def test_cancel_raises_cancelled_not_timeout() -> None:
    token = CancelToken(timeout_seconds=60)
    token.cancel()
    with pytest.raises(TurnCancelled) as exc_info:
        token.raise_if_set()
    assert not isinstance(exc_info.value, TurnTimeout)
    assert str(exc_info.value) == "Cancelled"


def test_deadline_raises_timeout() -> None:
    token = CancelToken(timeout_seconds=0.05)
    time.sleep(0.1)
    assert token.timed_out
    assert not token.cancelled
    with pytest.raises(TurnTimeout, match=r"Request timed out after 0\.05s"):
        token.raise_if_set()


def test_sleep_wakes_on_cancel() -> None:
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()
    start = time.monotonic()
    with pytest.raises(TurnCancelled):
        token.sleep(10)
    assert time.monotonic() - start < 2


def test_sleep_stops_at_deadline() -> None:
    token = CancelToken(timeout_seconds=0.1)
    start = time.monotonic()
    with pytest.raises(TurnTimeout):
        token.sleep(10)
    assert time.monotonic() - start < 2


def test_sleep_returns_normally() -> None:
    CancelToken().sleep(0.01)


def test_ensure_token_wraps_events() -> None:
    event = threading.Event()
    token = ensure_token(event)
    assert token.cancel_event is event
    assert ensure_token(token) is token
    assert isinstance(ensure_token(None), CancelToken)
