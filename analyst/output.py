"""Rendering sandbox results for the user and the model.

Terminal rounds produce user-visible text (spilled to a file when too
large); non-terminal rounds produce a compact JSON feedback message with
byte-bounded prints and value.
"""

from __future__ import annotations

import json
import math
import os
import uuid
from pathlib import Path

from .limits import get_limit
from .paths import ensure_output_dir
from .types import SandboxResult

FEEDBACK_PREFIX = "Code execution result: "
NO_OUTPUT_PLACEHOLDER = "(No output produced.)"
TRUNCATION_MARKER = "\n...(truncated)"
UNSERIALIZABLE = '{"_error":"cyclic or non-serializable value"}'

SYNTAX_ERROR_HINT = (
    "Your response was not valid Python. You must respond with Python code only: "
    "no markdown, no prose, no explanation. Use # comments for thinking."
)


def _nan_to_none(value):
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: _nan_to_none(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_nan_to_none(v) for v in value]
    return value


def safe_stringify(value) -> tuple[bool, str]:
    """Compact JSON for *value*; ``(False, UNSERIALIZABLE)`` if it can't be encoded.

    NaN and infinities become ``null``.
    """
    try:
        return True, json.dumps(_nan_to_none(value), separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError, RecursionError):
        return False, UNSERIALIZABLE


def truncate_utf8(text: str, max_bytes: int) -> tuple[str, bool]:
    """Cut *text* to at most *max_bytes* UTF-8 bytes on a code-point boundary.

    Returns ``(text, truncated)``; a truncated result carries the marker.
    """
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text, False
    cut = max(0, max_bytes)
    # Step back over continuation bytes (10xxxxxx)
    while cut > 0 and (data[cut] & 0xC0) == 0x80:
        cut -= 1
    return data[:cut].decode("utf-8") + TRUNCATION_MARKER, True


def has_observable_output(result: SandboxResult) -> bool:
    return bool(result.prints) or (result.ended_with_expression and result.value is not None)


def collect_terminal_output(result: SandboxResult) -> str:
    """Concatenate prints and the final expression value (plus newline)."""
    parts = list(result.prints)
    if result.ended_with_expression and result.value is not None:
        _, serialized = safe_stringify(result.value)
        parts.append(serialized + "\n")
    return "".join(parts) or NO_OUTPUT_PLACEHOLDER


def handle_overflow(text: str, allowed_dir: str | Path) -> str:
    """Return *text*, or a pointer to a file holding it when it is too large."""
    size = len(text.encode("utf-8"))
    if size <= get_limit("terminal.overflow_bytes"):
        return text
    try:
        out_dir = ensure_output_dir(allowed_dir)
        out_file = out_dir / f"{uuid.uuid4()}.txt"
        out_file.write_text(text, encoding="utf-8")
    except OSError:
        return f"Output too large ({size} bytes) but could not write to file (path validation failed)."
    rel = os.path.relpath(out_file, os.path.realpath(allowed_dir))
    return f"Output too large ({size} bytes). Written to {rel}"


def _bounded_prints(result: SandboxResult, payload: dict) -> None:
    if result.prints:
        text, truncated = truncate_utf8("".join(result.prints), get_limit("feedback.output_max_bytes"))
        payload["prints"] = text
        if truncated:
            payload["truncated"] = True


def build_execution_feedback(result: SandboxResult, rounds_remaining: int) -> str:
    """Feedback message for the model after one execution.

    The value gets whatever byte budget is left after prints and a fixed
    JSON overhead estimate.
    """
    if result.success:
        payload: dict = {"success": True}
        _bounded_prints(result, payload)
        if result.ended_with_expression and result.value is not None:
            ok, serialized = safe_stringify(result.value)
            prints_bytes = len(payload.get("prints", "").encode("utf-8"))
            budget = (
                get_limit("feedback.output_max_bytes")
                - prints_bytes
                - get_limit("feedback.json_overhead_bytes")
            )
            if len(serialized.encode("utf-8")) > budget:
                payload["value"], _ = truncate_utf8(serialized, budget)
                payload["value_truncated"] = True
            else:
                payload["value"] = json.loads(serialized) if ok else serialized
        payload["rounds_remaining"] = rounds_remaining
        return FEEDBACK_PREFIX + json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    payload = {
        "success": False,
        "error_type": result.error_type,
        "message": result.message,
        "is_timeout": bool(result.is_timeout),
        "rounds_remaining": rounds_remaining,
    }
    _bounded_prints(result, payload)
    if result.error_type == "SyntaxError":
        payload["hint"] = SYNTAX_ERROR_HINT
    return FEEDBACK_PREFIX + json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def build_status_feedback(payload: dict) -> str:
    """Feedback message for loop-level conditions (truncated reply, no output)."""
    return FEEDBACK_PREFIX + json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
