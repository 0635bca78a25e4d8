"""Combined cancel/timeout signal for one turn.

A ``CancelToken`` fires when either the caller's ``threading.Event`` is set
or the per-call deadline passes. Every blocking wait in the turn loop (HTTP
poll, backoff sleep, sandbox lock poll) checks it.
"""

from __future__ import annotations

import threading
import time


class TurnCancelled(Exception):
    """Raised when the caller cancelled the in-flight turn."""


class TurnTimeout(TurnCancelled):
    """Raised when the per-call deadline passed."""


class CancelToken:
    """Caller cancel event combined with an optional deadline.

    Args:
        cancel_event: Event the caller sets to cancel. A private one is
            created when omitted.
        timeout_seconds: Seconds from now until the token fires on its
            own. None means no deadline.
    """

    def __init__(
        self,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ):
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.timeout_seconds = timeout_seconds
        self._deadline = (
            time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        """True if the caller's event was set (timeouts excluded)."""
        return self.cancel_event.is_set()

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def is_set(self) -> bool:
        return self.cancelled or self.timed_out

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_set(self) -> None:
        """Raise ``TurnCancelled`` / ``TurnTimeout`` if the token fired."""
        if self.cancelled:
            raise TurnCancelled("Cancelled")
        if self.timed_out:
            raise TurnTimeout(f"Request timed out after {self.timeout_seconds:g}s")

    def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising as soon as the token fires."""
        end = time.monotonic() + max(0.0, seconds)
        while True:
            self.raise_if_set()
            now = time.monotonic()
            if now >= end:
                return
            wait = end - now
            remaining = self.remaining()
            if remaining is not None:
                # Wake up at the deadline so the timeout is raised on time
                wait = min(wait, remaining + 0.001)
            self.cancel_event.wait(wait)


def ensure_token(token: CancelToken | threading.Event | None) -> CancelToken:
    """Accept a token, a bare event, or None and return a CancelToken."""
    if isinstance(token, CancelToken):
        return token
    return CancelToken(cancel_event=token)
