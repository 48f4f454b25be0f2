"""Rate limiters that decide how long a requeued item waits before it is ready again."""

from __future__ import annotations

import threading
import time
from typing import Callable, Hashable, Protocol


class RateLimiter(Protocol):
    """What a queue needs from a rate limiter."""

    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """Per-item back-off: ``base_delay * 2**failures``, capped at ``max_delay`` (seconds)."""

    def __init__(self, base_delay: float, max_delay: float) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._lock = threading.Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, item):
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        try:
            backoff = self.base_delay * 2.0**exponent
        except OverflowError:
            return self.max_delay
        return min(backoff, self.max_delay)

    def forget(self, item):
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item):
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket: ``qps`` tokens per second, holding at most ``burst``.

    The delay is shared by all items; the limiter also counts how often each
    item asked for a slot until it is forgotten.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.qps = float(qps)
        self.burst = burst
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = self._clock()
        self._requeues: dict[Hashable, int] = {}

    def when(self, item):
        with self._lock:
            self._requeues[item] = self._requeues.get(item, 0) + 1
            now = self._clock()
            elapsed = max(0.0, now - self._last)
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item):
        with self._lock:
            self._requeues.pop(item, None)

    def num_requeues(self, item):
        with self._lock:
            return self._requeues.get(item, 0)


class MaxOfRateLimiter:
    """Combines limiters: the longest delay wins and every limiter forgets together."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item):
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item):
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item):
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter():
    """Per-item exponential back-off (5ms to 1000s) combined with a 10 qps, 100 burst bucket."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(0.005, 1000.0),
        BucketRateLimiter(10, 100),
    )