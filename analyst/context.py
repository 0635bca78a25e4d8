"""Token-budgeted view of the conversation history.

Two pure passes run before every LLM request:

1. ``prune_failed_rounds`` drops every (assistant, error-feedback) pair
   except the most recent one.
2. ``apply_sliding_window`` keeps the newest entries that fit within a
   fraction of the context window. The newest entry is always kept.

Token counts are estimated from UTF-8 byte length, not a tokenizer.
"""

from __future__ import annotations

import math

from .limits import get_limit
from .types import STATUS_ERROR, AssistantEntry, HistoryEntry, UserEntry


def estimate_tokens(entry: HistoryEntry) -> int:
    """Approximate token count: ceil(utf8 bytes / bytes-per-token)."""
    return math.ceil(len(entry.content.encode("utf-8")) / get_limit("context.bytes_per_token"))


def _is_failed_pair(first: HistoryEntry, second: HistoryEntry) -> bool:
    return (
        isinstance(first, AssistantEntry)
        and isinstance(second, UserEntry)
        and second.execution_status == STATUS_ERROR
    )


def prune_failed_rounds(history: list[HistoryEntry]) -> list[HistoryEntry]:
    """Return a copy of *history* with all but the latest failed round removed.

    A failed round is an assistant entry immediately followed by a user
    entry whose ``execution_status`` is ``"error"``.
    """
    pair_starts = [
        i for i in range(len(history) - 1)
        if _is_failed_pair(history[i], history[i + 1])
    ]
    skip: set[int] = set()
    for start in pair_starts[:-1]:
        skip.add(start)
        skip.add(start + 1)
    return [entry for i, entry in enumerate(history) if i not in skip]


def apply_sliding_window(history: list[HistoryEntry], budget_tokens: int) -> list[HistoryEntry]:
    """Keep the newest entries whose estimated tokens fit the budget.

    The budget is ``floor(budget_tokens * context.budget_fraction)``. The
    last entry is kept even if it alone exceeds the budget; walking
    backward, the first entry that would overflow ends the window.
    """
    if not history:
        return []
    budget = math.floor(budget_tokens * get_limit("context.budget_fraction"))

    total = estimate_tokens(history[-1])
    kept = [history[-1]]
    for entry in reversed(history[:-1]):
        tokens = estimate_tokens(entry)
        if total + tokens > budget:
            break
        total += tokens
        kept.append(entry)
    kept.reverse()
    return kept


def transform_context(history: list[HistoryEntry], budget_tokens: int) -> list[HistoryEntry]:
    """Prune failed rounds, then apply the sliding window."""
    return apply_sliding_window(prune_failed_rounds(history), budget_tokens)


def convert_to_llm_messages(history: list[HistoryEntry]) -> list[dict]:
    """Strip bookkeeping fields; the endpoint only sees role and content."""
    return [{"role": entry.role, "content": entry.content} for entry in history]
