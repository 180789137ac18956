"""
Rate Limiter

Request-count rate limiting for the caller-facing operations (ingest, chat,
key tests). Limits are keyed by subject (usually the client address) and
operation name.

`InMemoryRateLimiter` keeps counters in process memory and is only correct for
single-instance deployments. Multi-instance deployments should provide a
`RateLimiter` backed by a shared counter store.
"""

from __future__ import annotations

import time
from threading import RLock
from typing import Callable, Dict, NamedTuple, Tuple


class RateLimit(NamedTuple):
    """Maximum number of requests per window (seconds)."""
    max_requests: int
    window: float


class RateLimiter:
    """Interface for rate limiter implementations."""

    def hit(self, subject: str, operation: str) -> bool:
        """
        Record one request and return True if it is allowed.
        """
        raise NotImplementedError

    def reset(self) -> None:
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    """
    Fixed-window counter per (subject, operation).

    Operations without a configured limit are always allowed. Counters whose
    window has elapsed are swept at most once per shortest window, so the map
    only holds subjects seen recently.
    """

    def __init__(
        self,
        limits: Dict[str, RateLimit],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limits = dict(limits)
        self._clock = clock
        self._counters: Dict[Tuple[str, str], Tuple[int, float]] = {}
        self._lock = RLock()
        self._sweep_interval = min((limit.window for limit in self._limits.values()), default=0.0)
        self._last_sweep = clock()

    def hit(self, subject: str, operation: str) -> bool:
        limit = self._limits.get(operation)
        if limit is None:
            return True

        key = (subject, operation)
        now = self._clock()

        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)

            count, window_start = self._counters.get(key, (0, now))

            if now - window_start >= limit.window:
                # Window elapsed, start a new one
                count, window_start = 0, now

            if count >= limit.max_requests:
                return False

            self._counters[key] = (count + 1, window_start)
            return True

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def __len__(self) -> int:
        return len(self._counters)

    def _sweep(self, now: float) -> None:
        """Drop counters whose window has elapsed."""
        expired = [
            key
            for key, (_, window_start) in self._counters.items()
            if now - window_start >= self._limits[key[1]].window
        ]
        for key in expired:
            del self._counters[key]
        self._last_sweep = now
