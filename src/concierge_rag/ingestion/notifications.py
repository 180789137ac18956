"""
Progress Notifications

Process-wide publish/subscribe channel for ingestion progress events.

Delivery is best-effort and at most once: each subscriber owns a bounded
queue, and events are dropped for subscribers whose queue is full. Publishing
never raises.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Set

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("concierge.notifications")


class ProgressEvent(BaseModel):
    """Broadcast payload for one source state change."""
    source_id: str = Field(..., serialization_alias="sourceId")
    status: str
    progress: int = Field(..., ge=0, le=100)
    message: str = ""

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class ProgressBroadcaster:
    """
    Fan-out of ProgressEvents to all current subscribers.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self._subscribers: Set[asyncio.Queue] = set()
        self._max_queue_size = max_queue_size

    def publish(self, event: ProgressEvent) -> int:
        """
        Deliver `event` to every subscriber.

        Returns the number of subscribers that received it.
        """
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning("Dropping progress event for slow subscriber")
        return delivered

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        """
        Register a subscriber queue for the duration of the context.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


# Global singleton
progress_broadcaster = ProgressBroadcaster()
