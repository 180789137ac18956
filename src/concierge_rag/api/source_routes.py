"""
Knowledge Source Routes

This module exposes endpoints for:
- Registering, listing and deleting knowledge sources
- Starting (re-)ingestion of a source as a background task
- Streaming ingestion progress events to observers (server-sent events)

Ingestion is accepted with 202 and runs after the response is sent, inside
its own database session. Progress is observable through the source row and
the `/sources/events` stream.
"""

import asyncio
import json
import logging
import uuid
from typing import Annotated, AsyncIterator, Awaitable, Callable, List

from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.responses import StreamingResponse

from .dependencies import (
    get_broadcaster,
    get_config_cache,
    get_source_locks,
    get_source_repository,
    rate_limited,
)
from .models import OperationResult, SourceCreateRequest, SourceResponse
from ..core.cache import TTLCache
from ..core.errors import IngestionInProgressError
from ..db.sources import SourceRepository
from ..ingestion.locks import SourceLocks
from ..ingestion.notifications import ProgressBroadcaster
from ..ingestion.worker import run_ingestion

logger = logging.getLogger("concierge.api.sources")

router = APIRouter(prefix="/sources", tags=["sources"])

# Seconds between SSE keep-alive comments when no events arrive
KEEPALIVE_INTERVAL = 15.0

IngestionRunner = Callable[[uuid.UUID, TTLCache], Awaitable[object]]


def get_ingestion_runner() -> IngestionRunner:
    return run_ingestion


# ---------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------

@router.post(
    "",
    response_model=SourceResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a knowledge source",
)
async def create_source(
    req: SourceCreateRequest,
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
) -> SourceResponse:
    source = await sources.create(
        name=req.name,
        kind=req.type,
        url=req.url,
        content=req.content,
    )
    logger.info("Registered %s source %s (%s)", source.type, source.id, source.name)
    return SourceResponse.from_row(source)


@router.get("", response_model=List[SourceResponse], summary="List knowledge sources")
async def list_sources(
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
) -> List[SourceResponse]:
    return [SourceResponse.from_row(row) for row in await sources.list()]


@router.get(
    "/events",
    summary="Stream ingestion progress events",
    response_class=StreamingResponse,
)
async def source_events(
    broadcaster: Annotated[ProgressBroadcaster, Depends(get_broadcaster)],
) -> StreamingResponse:
    """
    Server-sent event stream of `progress_update` events:

        event: progress_update
        data: {"sourceId": ..., "status": ..., "progress": ..., "message": ...}
    """

    async def event_stream() -> AsyncIterator[str]:
        async with broadcaster.subscribe() as queue:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_INTERVAL)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue

                data = json.dumps(event.model_dump(by_alias=True))
                yield f"event: progress_update\ndata: {data}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/{source_id}", response_model=SourceResponse, summary="Read one knowledge source")
async def get_source(
    source_id: uuid.UUID,
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
) -> SourceResponse:
    return SourceResponse.from_row(await sources.get(source_id))


@router.delete(
    "/{source_id}",
    response_model=OperationResult,
    summary="Delete a knowledge source and its documents",
)
async def delete_source(
    source_id: uuid.UUID,
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
    locks: Annotated[SourceLocks, Depends(get_source_locks)],
) -> OperationResult:
    if locks.is_locked(source_id):
        raise IngestionInProgressError(
            f"Cannot delete source {source_id} while it is being ingested"
        )

    deleted_documents = await sources.delete(source_id)
    logger.info("Deleted source %s (%d documents)", source_id, deleted_documents)
    return OperationResult(
        status="deleted",
        count=1,
        details={"documents": deleted_documents},
    )


@router.delete(
    "",
    response_model=OperationResult,
    summary="Delete all knowledge sources",
)
async def delete_all_sources(
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
    locks: Annotated[SourceLocks, Depends(get_source_locks)],
) -> OperationResult:
    if locks.any_locked():
        raise IngestionInProgressError(
            "Cannot delete all sources while an ingestion is running"
        )

    count = await sources.delete_all()
    logger.info("Bulk-deleted %d sources", count)
    return OperationResult(status="deleted", count=count)


# ---------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------

@router.post(
    "/{source_id}/ingest",
    response_model=OperationResult,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start (re-)ingestion of a knowledge source",
    dependencies=[Depends(rate_limited("ingest"))],
)
async def ingest_source(
    source_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    sources: Annotated[SourceRepository, Depends(get_source_repository)],
    locks: Annotated[SourceLocks, Depends(get_source_locks)],
    config_cache: Annotated[TTLCache, Depends(get_config_cache)],
    runner: Annotated[IngestionRunner, Depends(get_ingestion_runner)],
) -> OperationResult:
    """
    Validate the source and schedule its ingestion.

    The ingestion itself runs after the response is sent, so failures are
    reported through the source row, not this response.
    """
    source = await sources.get(source_id)

    if locks.is_locked(source_id):
        raise IngestionInProgressError(
            f"Ingestion already in progress for source {source_id}"
        )

    background_tasks.add_task(runner, source.id, config_cache)
    logger.info("Scheduled ingestion for source %s", source.id)

    return OperationResult(status="accepted", details={"source_id": str(source.id)})
