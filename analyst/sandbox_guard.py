"""Single-flight access to the code interpreter.

The interpreter is shared, stateful and not reentrant, so at most one
execution runs at a time. Waiters poll the lock instead of queueing, which
lets a cancelled turn stop waiting immediately.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from pathlib import Path

from .cancellation import CancelToken, ensure_token
from .limits import get_limit
from .types import SandboxOptions, SandboxResult


class Interpreter(ABC):
    """A code interpreter the turn loop can run model-written code in."""

    @abstractmethod
    def execute(self, code: str, allowed_dir: str | Path, options: SandboxOptions) -> SandboxResult:
        """Run *code* with file access confined to *allowed_dir*.

        Execution errors (syntax, runtime, timeout) are returned as a
        failed ``SandboxResult``, never raised.
        """


class SandboxLock:
    """Mutex acquired by polling so waiters can observe cancellation."""

    def __init__(self, poll_seconds: float | None = None):
        self._lock = threading.Lock()
        self._poll = poll_seconds

    @property
    def poll_seconds(self) -> float:
        if self._poll is not None:
            return self._poll
        return get_limit("sandbox.lock_poll_ms") / 1000

    def locked(self) -> bool:
        return self._lock.locked()

    def acquire(self, token: CancelToken | None = None) -> None:
        """Block until acquired, raising if *token* fires first."""
        token = ensure_token(token)
        while True:
            token.raise_if_set()
            if self._lock.acquire(timeout=self.poll_seconds):
                break
        # The token may have fired between the last poll and acquisition
        if token.is_set():
            self._lock.release()
            token.raise_if_set()

    def release(self) -> None:
        self._lock.release()


# One interpreter per process by default, so one lock per process
SHARED_SANDBOX_LOCK = SandboxLock()


def run_guarded(
    interpreter: Interpreter,
    code: str,
    allowed_dir: str | Path,
    options: SandboxOptions,
    token: CancelToken | None = None,
    lock: SandboxLock | None = None,
) -> SandboxResult:
    """Execute *code* while holding the sandbox lock.

    Raises:
        TurnCancelled / TurnTimeout: the token fired while waiting for the lock.
    """
    lock = lock if lock is not None else SHARED_SANDBOX_LOCK
    lock.acquire(token)
    try:
        return interpreter.execute(code, allowed_dir, options)
    finally:
        lock.release()
