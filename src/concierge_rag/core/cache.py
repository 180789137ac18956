"""
TTL Cache

A small in-process cache with per-entry expiry and explicit invalidation.

Instances are injected into the services that need them (model configuration
lookups, provider model lists) instead of living as module-level state, so
tests can construct isolated caches and control the clock.
"""

from __future__ import annotations

import time
from threading import RLock
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


class TTLCache:
    """
    Mapping of keys to values that expire `ttl` seconds after insertion.
    """

    def __init__(
        self,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = RLock()

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None if missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None

            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any, ttl: Optional[float] = None) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + (ttl or self._ttl), value)

    def invalidate(self, key: Hashable) -> bool:
        """Drop a single entry. Returns True if it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup(self) -> int:
        """Remove expired entries and return how many were dropped."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (exp, _) in self._entries.items() if now >= exp]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
