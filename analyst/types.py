"""Core data types shared by the turn loop, the fact store and the sandbox.

History entries and facts are small tagged variants; everything that crosses
the event stream or the prompt has a ``to_dict()`` for JSON rendering.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Union

# Execution status values for synthetic feedback entries
STATUS_OK = "ok"
STATUS_ERROR = "error"


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------

@dataclass
class UserEntry:
    """A user turn in the conversation history.

    Attributes:
        content: Message text sent to the model.
        is_execution_result: True for synthetic feedback written by the
            turn loop rather than typed by the human.
        execution_status: ``"ok"`` or ``"error"`` on feedback entries; used
            by failed-round pruning. None for human input.
    """
    content: str
    is_execution_result: bool = False
    execution_status: str | None = None

    role = "user"


@dataclass
class AssistantEntry:
    """An assistant turn: executed code or the answer shown to the user."""
    content: str

    role = "assistant"


HistoryEntry = Union[UserEntry, AssistantEntry]


def feedback_entry(content: str, status: str) -> UserEntry:
    """Build a synthetic execution-result entry."""
    return UserEntry(content=content, is_execution_result=True, execution_status=status)


# ---------------------------------------------------------------------------
# Facts
# ---------------------------------------------------------------------------

@dataclass
class FileFact:
    """A data file the model has looked at."""
    filename: str
    round_id: str
    timestamp: float

    type = "file"


@dataclass
class FilterFact:
    """Filter arguments used in one round (region of interest, sampling...)."""
    description: str
    round_id: str
    timestamp: float

    type = "filter"


@dataclass
class OutputFact:
    """A file the model wrote under the output directory. Never evicted."""
    path: str
    round_id: str
    timestamp: float

    type = "output"


Fact = Union[FileFact, FilterFact, OutputFact]


def fact_to_dict(fact: Fact) -> dict:
    """Return the fact as a plain dict with its ``type`` tag first."""
    return {"type": fact.type, **asdict(fact)}


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SandboxOptions:
    """Resource caps forwarded unmodified to the interpreter."""
    max_records_read_table: int = 5_000
    max_records_peek: int = 200_000
    max_output_bytes: int = 20 * 1024
    max_read_bytes: int = 1024 * 1024
    max_write_bytes: int = 50 * 1024 * 1024
    max_duration_secs: int = 600
    max_memory: int = 512 * 1024 * 1024
    max_allocations: int = 100_000

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SandboxResult:
    """Outcome of one interpreter invocation.

    On success ``value``, ``ended_with_expression``,
    ``continue_thinking_called`` and ``prints`` are meaningful; on failure
    ``error_type``, ``message`` and ``is_timeout``. ``prints`` may be set
    in both cases (output captured before an exception).
    """
    success: bool
    value: Any = None
    ended_with_expression: bool = False
    continue_thinking_called: bool = False
    prints: list[str] = field(default_factory=list)
    error_type: str | None = None
    message: str | None = None
    is_timeout: bool = False
    truncated: bool = False

    @classmethod
    def failure(cls, error_type: str, message: str, *, is_timeout: bool = False,
                prints: list[str] | None = None) -> "SandboxResult":
        return cls(
            success=False,
            error_type=error_type,
            message=message,
            is_timeout=is_timeout,
            prints=list(prints or []),
        )

    @classmethod
    def from_dict(cls, data: dict) -> "SandboxResult":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Step:
    """One executed code block and its result (for the host's code panel)."""
    code: str
    result: SandboxResult

    def to_dict(self) -> dict:
        return {"code": self.code, "result": self.result.to_dict()}


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EndpointSettings:
    """Where chat completions are sent."""
    endpoint_url: str
    model: str
    api_key: str = ""
