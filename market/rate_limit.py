"""Token-bucket rate limiter for market data calls."""

from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Optional


class TokenBucket:
    """Refill `rate` tokens per second up to `capacity`. Clock and sleep are injectable for tests."""

    def __init__(
        self,
        rate: float = 0.5,
        capacity: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity or max(1, int(rate * 2))
        self.tokens = float(self.capacity)
        self._clock = clock
        self._sleep = sleep
        self.last = clock()
        self._lock = Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.last) * self.rate)
        self.last = now

    def consume(self, n: int = 1) -> bool:
        """Consume n tokens. Return True if allowed, False if not enough."""
        with self._lock:
            self._refill()
            if self.tokens >= n:
                self.tokens -= n
                return True
            return False

    def time_until_available(self, n: int = 1) -> float:
        with self._lock:
            self._refill()
            missing = n - self.tokens
            return max(0.0, missing / self.rate)

    def wait_for_token(self, n: int = 1) -> None:
        """Block until n tokens are available, then take them."""
        while not self.consume(n):
            self._sleep(max(self.time_until_available(n), 0.01))
