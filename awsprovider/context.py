"""Per-invocation cancellation and deadline."""

from __future__ import annotations

import threading
import time
from typing import Optional

from awsprovider.errors import CancelledError, DeadlineExceededError


class Context:
    """
    Cancellation signal carried through one reconcile invocation.

    Combines the process-wide stop event with an optional per-invocation
    timeout. Outbound calls check it before going out, and blocking waits
    use :meth:`wait` so they unwind as soon as it fires.
    """

    def __init__(
        self,
        stop: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._stop = stop or threading.Event()
        self._cancelled = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._cancelled.set()

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        return self._stop.is_set() or self._cancelled.is_set() or self.expired()

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise if the context is no longer live."""
        if self._stop.is_set() or self._cancelled.is_set():
            raise CancelledError("context cancelled")
        if self.expired():
            raise DeadlineExceededError("context deadline exceeded")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if the context ended first."""
        end = time.monotonic() + max(0.0, seconds)
        while True:
            if self.done():
                return True
            left = end - time.monotonic()
            if left <= 0:
                return False
            remaining = self.remaining()
            step = min(left, 0.05)
            if remaining is not None:
                step = min(step, remaining)
            self._stop.wait(step)


def background() -> Context:
    """A context that is never cancelled. Useful in tests and one-off scripts."""
    return Context()
