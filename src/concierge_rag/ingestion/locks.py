"""
Single-flight guard for source ingestion.

At most one ingestion runs per source within this process. A second request
for a busy source is rejected rather than queued, so two runs never race on
the delete-then-insert of that source's documents.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Hashable

from ..core.errors import IngestionInProgressError


class SourceLocks:
    """Per-source asyncio locks."""

    def __init__(self) -> None:
        self._locks: Dict[Hashable, asyncio.Lock] = {}

    def is_locked(self, source_id: Hashable) -> bool:
        lock = self._locks.get(source_id)
        return lock is not None and lock.locked()

    def any_locked(self) -> bool:
        return any(lock.locked() for lock in self._locks.values())

    @asynccontextmanager
    async def hold(self, source_id: Hashable) -> AsyncIterator[None]:
        """
        Hold the lock for `source_id`.

        Raises
        ------
        IngestionInProgressError
            If another ingestion already holds it.
        """
        lock = self._locks.setdefault(source_id, asyncio.Lock())
        if lock.locked():
            raise IngestionInProgressError(
                f"Ingestion already in progress for source {source_id}"
            )

        await lock.acquire()
        try:
            yield
        finally:
            lock.release()
            if not lock.locked():
                self._locks.pop(source_id, None)


# Global singleton
source_locks = SourceLocks()
