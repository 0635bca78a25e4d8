"""
Structured EventBus: progress stream for one chat session.

Architecture:
    bus.emit() → SessionEvent → listeners[]
      ├── DebugLogListener  → Python logger (file + console)
      ├── EventLogWriter    → JSONL event log on disk
      └── host callbacks    → CLI progress lines, tests

Listeners are called synchronously in emit order. A failing listener is
logged and never breaks the emitter.
"""

import contextvars
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .limits import trunc

# ---- Event type constants ----

# Turn lifecycle
TURN_START = "turn_start"
TURN_END = "turn_end"
TURN_ERROR = "turn_error"
TURN_CANCELLED = "turn_cancelled"

# LLM
LLM_REQUEST_START = "llm_request_start"
LLM_REQUEST_END = "llm_request_end"
LLM_RETRY = "llm_retry"

# Sandbox
CODE_EXECUTION_START = "code_execution_start"
CODE_EXECUTION_END = "code_execution_end"

# Fact store
FACT_UPDATE = "fact_update"

# Errors routed through log_error()
ERROR_LOG = "error_log"


# ---- SessionEvent ----

@dataclass(frozen=True)
class SessionEvent:
    """A single structured event in the session.

    Fields:
        id: Session-unique event ID (e.g. "evt_0001").
        type: Event type constant (e.g. "turn_start", "code_execution_end").
        ts: ISO 8601 timestamp (UTC, millisecond precision).
        level: Log level (debug/info/warning/error).
        summary: Short one-liner for logs.
        details: Full context, multi-line OK.
        data: Structured machine-readable payload.
    """
    id: str
    type: str
    ts: str
    level: str
    summary: str
    details: str
    data: dict


class EventBus:
    """Per-session event bus with synchronous listener dispatch.

    Thread-safe: emit() and subscribe() use a lock. Listeners run outside
    the lock so they may emit in turn.
    """

    def __init__(self, session_id: str = ""):
        self._events: list[SessionEvent] = []
        self._lock = threading.Lock()
        self._listeners: list[Callable[[SessionEvent], None]] = []
        self.session_id = session_id
        self._next_event_id: int = 0

    def emit(
        self,
        type: str,
        *,
        level: str = "debug",
        summary: str = "",
        details: str = "",
        data: Optional[dict] = None,
    ) -> SessionEvent:
        """Create, store, and dispatch a SessionEvent.

        Args:
            type: Event type constant (e.g. TURN_START).
            level: Log level (debug/info/warning/error).
            summary: Short one-liner. Defaults to the event type.
            details: Full context, multi-line OK.
            data: Structured payload.

        Returns:
            The created SessionEvent.
        """
        with self._lock:
            self._next_event_id += 1
            event = SessionEvent(
                id=f"evt_{self._next_event_id:04d}",
                type=type,
                ts=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                level=level,
                summary=summary or type,
                details=details,
                data=data or {},
            )
            self._events.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # Never let a listener break the emitter
                logging.getLogger("analyst").debug(
                    "Event listener %r failed on %s", listener, type, exc_info=True
                )
        return event

    def subscribe(self, listener: Callable[[SessionEvent], None]) -> None:
        """Register a listener called synchronously on each emit()."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[SessionEvent], None]) -> None:
        """Remove a previously registered listener."""
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def get_events(
        self,
        *,
        types: Optional[set[str]] = None,
        since_index: int = 0,
    ) -> list[SessionEvent]:
        """Return stored events, optionally filtered by type."""
        with self._lock:
            events = self._events[since_index:]
        if not types:
            return events
        return [e for e in events if e.type in types]

    def clear(self) -> None:
        """Remove all stored events."""
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


# ---- ContextVar singleton ----

_bus_var: contextvars.ContextVar[Optional[EventBus]] = contextvars.ContextVar(
    "_bus_var", default=None
)

# Module-level fallback for code that runs before any session is created
_fallback_bus: Optional[EventBus] = None
_fallback_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Return the EventBus for the current context.

    Falls back to a module-level singleton if no context-specific bus is set.
    """
    bus = _bus_var.get()
    if bus is not None:
        return bus
    global _fallback_bus
    if _fallback_bus is None:
        with _fallback_lock:
            if _fallback_bus is None:
                _fallback_bus = EventBus(session_id="<fallback>")
    return _fallback_bus


def set_event_bus(bus: EventBus) -> None:
    """Set the EventBus for the current context."""
    _bus_var.set(bus)


# ---- Listeners ----

class DebugLogListener:
    """Writes each SessionEvent to the Python logger."""

    _LEVEL_MAP = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    _TYPE_TO_TAG = {
        TURN_START: "turn",
        TURN_END: "turn",
        TURN_ERROR: "error",
        TURN_CANCELLED: "turn",
        LLM_REQUEST_START: "llm",
        LLM_REQUEST_END: "llm",
        LLM_RETRY: "llm",
        CODE_EXECUTION_START: "sandbox",
        CODE_EXECUTION_END: "sandbox",
        FACT_UPDATE: "facts",
        ERROR_LOG: "error",
    }

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def __call__(self, event: SessionEvent) -> None:
        level = self._LEVEL_MAP.get(event.level, logging.DEBUG)
        tag = self._TYPE_TO_TAG.get(event.type, "")
        message = event.summary
        if event.details:
            message = f"{message}\n{event.details}"
        self._logger.log(level, message, extra={"log_tag": tag})


class EventLogWriter:
    """Appends every event to a JSONL file on disk.

    Each line is a JSON object with {id, type, ts, level, summary, details, data}.
    The file is flushed after each write so it can be tailed during a session.
    """

    def __init__(self, path: Path):
        self._path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(path, "a", encoding="utf-8")

    def __call__(self, event: SessionEvent) -> None:
        record = {
            "id": event.id,
            "type": event.type,
            "ts": event.ts,
            "level": event.level,
            "summary": trunc(event.summary),
            "details": event.details,
            "data": event.data,
        }
        self._file.write(json.dumps(record, default=str) + "\n")
        self._file.flush()

    def close(self) -> None:
        """Flush and close the underlying file."""
        self._file.close()


def load_event_log(path: Path) -> list[dict]:
    """Read a JSONL event log file back into a list of dicts.

    Returns an empty list if the file doesn't exist. Unparseable lines
    are skipped.
    """
    if not path.exists():
        return []
    events = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    return events
