"""Central limits registry.

Every byte budget, time budget and size cap used by the turn loop lives
here as a named constant. Config.json overrides via ``"limits"``.

Public API:
    get_limit(name)  - lookup (int or float), KeyError on typo
    reload()         - re-read config overrides
    trunc(text, n)   - character truncation for log summaries
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Default limits
# ---------------------------------------------------------------------------

DEFAULTS: dict[str, int | float] = {
    # Context window estimation
    "context.bytes_per_token":            4,
    "context.budget_fraction":          0.8,
    # Turn budget
    "sandbox.max_cumulative_ms":  30 * 60 * 1000,
    "sandbox.lock_poll_ms":             100,
    # Facts block
    "facts.max_bytes":                 2048,
    # Round feedback
    "feedback.output_max_bytes":       8192,
    "feedback.json_overhead_bytes":     200,
    # Terminal output spill-to-file threshold
    "terminal.overflow_bytes":     10 * 1024,
    # Sandbox value gate, derived from the context window and clamped
    "output.min_bytes":             4 * 1024,
    "output.max_bytes":            80 * 1024,
    "output.context_fraction":         0.15,
    # Sandbox capture caps
    "sandbox.print_capture_bytes": 1_048_576,
    "sandbox.max_ls_entries":           500,
    # LLM request
    "llm.max_completion_tokens":       4096,
    "llm.backoff_base_ms":             1000,
    "llm.backoff_cap_ms":             30000,
    "llm.poll_ms":                      100,
    "llm.model_list_timeout_s":          10,
    # Log summaries
    "console.summary":                  300,
}

# ---------------------------------------------------------------------------
# Runtime state: overrides from config.json
# ---------------------------------------------------------------------------

_overrides: dict[str, int | float] = {}


def reload() -> None:
    """Re-read config.json overrides for limits.

    Called by ``config.reload_config()`` and at import time.
    """
    global _overrides
    import config
    _overrides = config.get("limits", {})


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_limit(name: str) -> int | float:
    """Return the effective limit for *name*.

    Raises ``KeyError`` if *name* is not in DEFAULTS (catches typos).
    """
    if name not in DEFAULTS:
        raise KeyError(f"Unknown limit: {name!r}")
    override = _overrides.get(name)
    if override is not None:
        return type(DEFAULTS[name])(override)
    return DEFAULTS[name]


def trunc(text: str, limit_name: str = "console.summary") -> str:
    """Truncate *text* to the named limit, appending ``"..."`` if cut."""
    n = int(get_limit(limit_name))
    if n == 0 or len(text) <= n:
        return text
    return text[: n - 3] + "..."


# ---------------------------------------------------------------------------
# Initialize overrides at import time
# ---------------------------------------------------------------------------

try:
    reload()
except Exception:
    pass  # config may not be loadable yet (e.g., during testing)
