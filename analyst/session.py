"""Conversation state shared by the CLI and other hosts.

A ``ChatSession`` owns the history, the fact store and the cancel event of
the in-flight request. Sending a new message cancels the previous one;
results that arrive for a superseded request are reported, not applied.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

from .cancellation import TurnCancelled, TurnTimeout
from .chat_config import ChatConfig
from .event_bus import TURN_CANCELLED, TURN_ERROR, EventBus, get_event_bus
from .logging import log_error
from .orchestrator import TurnOrchestrator
from .sandbox_guard import Interpreter, SandboxLock
from .types import EndpointSettings, Fact, HistoryEntry, Step

CANCELLED = "Cancelled"
SUPERSEDED = "Request superseded"


@dataclass
class SendResult:
    """Outcome of ``ChatSession.send_message``.

    On success ``text`` and ``steps`` are set; otherwise ``error`` (and
    ``is_timeout`` when the per-call timeout fired).
    """
    success: bool
    text: str = ""
    steps: list[Step] = field(default_factory=list)
    error: str = ""
    is_timeout: bool = False


def _is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (TurnTimeout, TimeoutError)) or "timed out" in str(exc)


class ChatSession:
    """Manages conversation state for a single chat session."""

    def __init__(
        self,
        endpoint: EndpointSettings,
        allowed_dir: str | Path,
        config: ChatConfig | None = None,
        *,
        interpreter: Interpreter | None = None,
        sandbox_lock: SandboxLock | None = None,
        event_bus: EventBus | None = None,
    ):
        self.config = config if config is not None else ChatConfig()
        self.bus = event_bus if event_bus is not None else get_event_bus()
        self.orchestrator = TurnOrchestrator(
            endpoint,
            allowed_dir,
            interpreter=interpreter,
            sandbox_lock=sandbox_lock,
            event_bus=self.bus,
        )
        self.history: list[HistoryEntry] = []
        self.facts: list[Fact] = []
        self.request_id = 0
        self._cancel_event: threading.Event | None = None
        self._lock = threading.Lock()

    def _start_request(self) -> tuple[int, threading.Event]:
        with self._lock:
            self.request_id += 1
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._cancel_event = threading.Event()
            return self.request_id, self._cancel_event

    def _is_current(self, request_id: int) -> bool:
        with self._lock:
            return request_id == self.request_id

    def send_message(self, message: str, config: ChatConfig | None = None) -> SendResult:
        """Run one turn and report its outcome as a value.

        Cancellation, supersession and endpoint failures are returned as
        ``SendResult(success=False, ...)``; nothing is raised.
        """
        request_id, cancel_event = self._start_request()
        cfg = config if config is not None else self.config

        try:
            result = self.orchestrator.handle_user_message(
                message, self.history, self.facts, cfg, cancel_event=cancel_event,
            )
        except Exception as e:
            # The caller's own cancel wins over "superseded" (cancel bumps the id)
            if cancel_event.is_set() and isinstance(e, TurnCancelled) and not isinstance(e, TurnTimeout):
                self.bus.emit(TURN_CANCELLED, level="info", summary="[Turn] cancelled")
                return SendResult(success=False, error=CANCELLED)
            if not self._is_current(request_id):
                return SendResult(success=False, error=SUPERSEDED)
            is_timeout = _is_timeout(e)
            error = str(e) or type(e).__name__
            if not isinstance(e, TurnCancelled):
                log_error("Turn failed", exc=e, context={"message": message[:200]})
            self.bus.emit(TURN_ERROR, level="error", summary=f"[Turn] {error}",
                          data={"error": error, "is_timeout": is_timeout})
            return SendResult(success=False, error=error, is_timeout=is_timeout)

        if cancel_event.is_set():
            self.bus.emit(TURN_CANCELLED, level="info", summary="[Turn] cancelled")
            return SendResult(success=False, error=CANCELLED)
        if not self._is_current(request_id):
            return SendResult(success=False, error=SUPERSEDED)
        return SendResult(success=True, text=result.text, steps=result.steps)

    def cancel(self) -> None:
        """Cancel the in-flight request, if any."""
        with self._lock:
            self.request_id += 1
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._cancel_event = None

    def reset(self) -> None:
        """Start a fresh conversation (history, facts, last payload)."""
        self.cancel()
        self.history = []
        self.facts = []
        self.orchestrator.reset_last_sent_messages()
