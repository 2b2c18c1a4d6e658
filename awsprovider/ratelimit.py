"""Token bucket rate limiting for outbound AWS calls."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, Optional

from awsprovider.context import Context

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Thread-safe token bucket.

    Tokens refill continuously at ``rate`` per second up to ``burst``.
    Callers block in :meth:`wait` rather than fail when the bucket is empty.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def _refill_locked(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill_locked()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def delay(self) -> float:
        """Seconds until the next token becomes available."""
        with self._lock:
            self._refill_locked()
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self.rate

    def wait(self, ctx: Optional[Context] = None) -> None:
        """
        Block until a token is taken.

        Raises:
            CancelledError: If ``ctx`` is cancelled or expires while waiting
        """
        ctx = ctx or Context()
        while True:
            ctx.check()
            if self.try_acquire():
                return
            pause = self.delay()
            if ctx.wait(pause):
                ctx.check()


class LimiterRegistry:
    """One bucket per destination, created on first use."""

    def __init__(self, rate: float = 5.0, burst: int = 5) -> None:
        self.rate = rate
        self.burst = burst
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get(self, destination: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(destination)
            if bucket is None:
                bucket = TokenBucket(self.rate, self.burst)
                self._buckets[destination] = bucket
                logger.debug(f"Created rate limiter for {destination} ({self.rate}/s, burst {self.burst})")
            return bucket
