"""Tests for failed-round pruning and the sliding context window."""

from __future__ import annotations

from analyst.context import (
    apply_sliding_window,
    convert_to_llm_messages,
    estimate_tokens,
    prune_failed_rounds,
    transform_context,
)
from analyst.types import STATUS_ERROR, STATUS_OK, AssistantEntry, UserEntry, feedback_entry


def _failed_round(i: int) -> list:
    return [
        AssistantEntry(content=f"bad code {i}"),
        feedback_entry(f"error {i}", STATUS_ERROR),
    ]


def test_estimate_tokens_rounds_up_utf8_bytes() -> None:
    assert estimate_tokens(UserEntry(content="")) == 0
    assert estimate_tokens(UserEntry(content="abcde")) == 2
    # "€" is three bytes
    assert estimate_tokens(UserEntry(content="€€€€")) == 3


class TestPruneFailedRounds:
    def test_single_failed_round_is_kept(self) -> None:
        history = [UserEntry(content="question"), *_failed_round(1)]
        assert prune_failed_rounds(history) == history

    def test_keeps_only_latest_failed_round(self) -> None:
        history = [UserEntry(content="question")]
        for i in range(4):
            history.extend(_failed_round(i))

        pruned = prune_failed_rounds(history)

        assert len(pruned) == len(history) - 2 * (4 - 1)
        assert [e.content for e in pruned] == ["question", "bad code 3", "error 3"]

    def test_successful_rounds_untouched(self) -> None:
        history = [
            UserEntry(content="question"),
            *_failed_round(1),
            AssistantEntry(content="good code"),
            feedback_entry("ok", STATUS_OK),
            *_failed_round(2),
        ]
        pruned = prune_failed_rounds(history)
        contents = [e.content for e in pruned]
        assert "bad code 1" not in contents
        assert contents == ["question", "good code", "ok", "bad code 2", "error 2"]

    def test_does_not_mutate_input(self) -> None:
        history = [*_failed_round(1), *_failed_round(2)]
        snapshot = list(history)
        prune_failed_rounds(history)
        assert history == snapshot

    def test_empty(self) -> None:
        assert prune_failed_rounds([]) == []


class TestSlidingWindow:
    def test_empty(self) -> None:
        assert apply_sliding_window([], 1000) == []

    def test_everything_fits(self) -> None:
        history = [UserEntry(content="a" * 40), AssistantEntry(content="b" * 40)]
        assert apply_sliding_window(history, 1000) == history

    def test_drops_oldest_entries_first(self) -> None:
        # 100 tokens each; budget 1000 * 0.8 = 800 tokens fits eight
        history = [UserEntry(content=str(i) * 400) for i in range(10)]
        window = apply_sliding_window(history, 1000)
        assert window == history[2:]

    def test_oversized_last_entry_is_kept(self) -> None:
        history = [
            UserEntry(content="small"),
            UserEntry(content="x" * 100_000),
        ]
        window = apply_sliding_window(history, 1000)
        assert window == [history[-1]]

    def test_stops_at_first_entry_that_overflows(self) -> None:
        history = [
            UserEntry(content="tiny"),
            UserEntry(content="y" * 4000),
            UserEntry(content="last"),
        ]
        # The large middle entry ends the window even though "tiny" would fit
        assert apply_sliding_window(history, 1000) == [history[-1]]


def test_transform_context_prunes_before_windowing() -> None:
    history = [UserEntry(content="question")]
    for i in range(3):
        history.extend(_failed_round(i))
    assert [e.content for e in transform_context(history, 32_000)] == [
        "question", "bad code 2", "error 2",
    ]


def test_convert_to_llm_messages_strips_bookkeeping() -> None:
    history = [UserEntry(content="hi"), AssistantEntry(content="print(1)"), feedback_entry("r", STATUS_OK)]
    assert convert_to_llm_messages(history) == [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "print(1)"},
        {"role": "user", "content": "r"},
    ]
