"""
Background ingestion entry point.

Each ingestion runs inside its own database session, independent of the
request that triggered it.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.cache import TTLCache
from ..core.errors import ConciergeError
from ..db import AsyncSessionLocal, VectorStore
from ..db.model_configs import ModelConfigService
from ..db.sources import SourceRepository
from ..embeddings.batcher import EmbeddingBatcher
from ..keys.store import ApiKeyStore
from .fetcher import ContentFetcher
from .locks import source_locks
from .notifications import progress_broadcaster
from .orchestrator import IngestionOrchestrator, IngestionResult

logger = logging.getLogger("concierge.ingestion.worker")


def build_orchestrator(session: AsyncSession, config_cache: TTLCache) -> IngestionOrchestrator:
    """Wire an orchestrator to the given session and the process-wide singletons."""
    return IngestionOrchestrator(
        sources=SourceRepository(session),
        documents=VectorStore(session),
        model_configs=ModelConfigService(session, config_cache),
        keys=ApiKeyStore(session),
        fetcher=ContentFetcher(),
        batcher=EmbeddingBatcher(),
        broadcaster=progress_broadcaster,
        locks=source_locks,
    )


async def run_ingestion(
    source_id: uuid.UUID,
    config_cache: TTLCache,
) -> Optional[IngestionResult]:
    """
    Execute one ingestion inside a dedicated DB session.

    This is the background-task boundary: refusals (unknown source, ingestion
    already running) and unexpected failures are logged here and yield None.
    """
    async with AsyncSessionLocal() as session:
        orchestrator = build_orchestrator(session, config_cache)
        try:
            return await orchestrator.start_ingestion(source_id)
        except ConciergeError as exc:
            logger.warning("Ingestion for source %s not started: %s", source_id, exc)
        except Exception:
            logger.exception("Ingestion task for source %s aborted", source_id)
    return None
