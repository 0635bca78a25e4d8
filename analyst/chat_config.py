"""Per-session tunables for the chat turn loop.

``CONFIG_FIELD_SPECS`` is the single source of truth for ranges and
defaults; the CLI and ``ChatConfig.from_config()`` both clamp through it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields

import config

from .limits import get_limit
from .types import SandboxOptions


@dataclass(frozen=True)
class FieldSpec:
    """Validation range for one numeric config field."""
    min: int
    max: int
    fallback: int
    label: str


CONFIG_FIELD_SPECS: dict[str, FieldSpec] = {
    # Smallest useful context window vs. largest models available today
    "context_window_tokens": FieldSpec(1_000, 2_000_000, 32_000, "context window tokens"),
    "max_retries": FieldSpec(1, 20, 5, "max retries"),
    "timeout_seconds": FieldSpec(10, 600, 120, "timeout seconds"),
    "max_code_rounds": FieldSpec(1, 50, 10, "max code rounds"),
    "max_records_read_table": FieldSpec(100, 100_000, 5_000, "max read_table records"),
    "max_records_peek": FieldSpec(100, 1_000_000, 200_000, "max peek_table records"),
    "max_duration_secs": FieldSpec(1, 3600, 600, "max sandbox duration seconds"),
    "max_memory_mb": FieldSpec(16, 16_384, 512, "max sandbox memory MB"),
    "max_allocations": FieldSpec(1_000, 100_000_000, 100_000, "max sandbox allocations"),
    "max_read_mb": FieldSpec(1, 1024, 1, "max read MB"),
    "max_write_mb": FieldSpec(1, 1024, 50, "max write MB"),
}

TEMPERATURE_RANGE = (0.0, 2.0)


def _validate_field_specs() -> None:
    """Assert min <= fallback <= max for every spec. Runs at import."""
    for key, spec in CONFIG_FIELD_SPECS.items():
        if spec.min > spec.max:
            raise ValueError(f"CONFIG_FIELD_SPECS.{key}: min ({spec.min}) > max ({spec.max})")
        if not spec.min <= spec.fallback <= spec.max:
            raise ValueError(
                f"CONFIG_FIELD_SPECS.{key}: fallback ({spec.fallback}) "
                f"outside [{spec.min}, {spec.max}]"
            )


_validate_field_specs()


def clamp_field(name: str, raw) -> int:
    """Parse *raw* as a number and clamp it to the field's range.

    Missing or non-numeric input yields the fallback.
    """
    spec = CONFIG_FIELD_SPECS[name]
    if raw is None:
        return spec.fallback
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return spec.fallback
    if not math.isfinite(n):
        return spec.fallback
    return int(round(max(spec.min, min(spec.max, n))))


def parse_temperature(raw) -> float | None:
    """Return a temperature in [0, 2], or None to let the provider decide."""
    if raw is None:
        return None
    try:
        t = float(raw)
    except (TypeError, ValueError):
        return None
    lo, hi = TEMPERATURE_RANGE
    if not math.isfinite(t) or t < lo or t > hi:
        return None
    return t


def derive_max_output_bytes(context_window_tokens: int) -> int:
    """Derive the sandbox value cap from the context window.

    Uses a fixed fraction of the window (at bytes-per-token), clamped to
    the output floor and ceiling.
    """
    budget_bytes = context_window_tokens * get_limit("context.bytes_per_token")
    derived = round(budget_bytes * get_limit("output.context_fraction"))
    return int(max(get_limit("output.min_bytes"), min(get_limit("output.max_bytes"), derived)))


@dataclass(frozen=True)
class ChatConfig:
    """Immutable per-session tunables. One instance per turn."""
    context_window_tokens: int = CONFIG_FIELD_SPECS["context_window_tokens"].fallback
    max_retries: int = CONFIG_FIELD_SPECS["max_retries"].fallback
    timeout_seconds: int = CONFIG_FIELD_SPECS["timeout_seconds"].fallback
    max_code_rounds: int = CONFIG_FIELD_SPECS["max_code_rounds"].fallback
    temperature: float | None = None
    max_records_read_table: int = CONFIG_FIELD_SPECS["max_records_read_table"].fallback
    max_records_peek: int = CONFIG_FIELD_SPECS["max_records_peek"].fallback
    max_duration_secs: int = CONFIG_FIELD_SPECS["max_duration_secs"].fallback
    max_memory_mb: int = CONFIG_FIELD_SPECS["max_memory_mb"].fallback
    max_allocations: int = CONFIG_FIELD_SPECS["max_allocations"].fallback
    max_read_mb: int = CONFIG_FIELD_SPECS["max_read_mb"].fallback
    max_write_mb: int = CONFIG_FIELD_SPECS["max_write_mb"].fallback

    @classmethod
    def from_values(cls, values: dict) -> "ChatConfig":
        """Build a config from loosely typed values (CLI strings, JSON)."""
        kwargs = {}
        for f in fields(cls):
            if f.name == "temperature":
                kwargs[f.name] = parse_temperature(values.get("temperature"))
            else:
                kwargs[f.name] = clamp_field(f.name, values.get(f.name))
        return cls(**kwargs)

    @classmethod
    def from_config(cls) -> "ChatConfig":
        """Build from the ``"chat"`` section of config.json."""
        return cls.from_values(config.get("chat", {}) or {})

    @property
    def max_output_bytes(self) -> int:
        return derive_max_output_bytes(self.context_window_tokens)

    def sandbox_options(self) -> SandboxOptions:
        """Derive the interpreter's resource caps (MB fields become bytes)."""
        mb = 1024 * 1024
        return SandboxOptions(
            max_records_read_table=self.max_records_read_table,
            max_records_peek=self.max_records_peek,
            max_output_bytes=self.max_output_bytes,
            max_read_bytes=self.max_read_mb * mb,
            max_write_bytes=self.max_write_mb * mb,
            max_duration_secs=self.max_duration_secs,
            max_memory=self.max_memory_mb * mb,
            max_allocations=self.max_allocations,
        )
