"""
Ingestion Orchestrator

Drives one source through fetch -> chunk -> embed -> persist and owns the
source's status:

    pending -> processing -> completed
                          -> failed

- Entering `processing` resets progress and clears any stale error, and the
  source's existing documents are removed so that a failed run never leaves
  old chunks behind.
- Progress reported by the embedding batcher is persisted after each batch
  and only ever moves forward.
- `completed` is written only after the new chunks are stored, together with
  the total chunk count.
- Any exception from any step is caught here, and only here, and persisted
  verbatim as the source's error with status `failed`. A cancelled task is
  also recorded as `failed` before the cancellation propagates.

Every state change is also broadcast on the progress channel. Broadcast
failures are logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from ..config import settings
from ..core.errors import ConfigMismatchError, UnsupportedContentError
from ..db.model_configs import ModelConfigService
from ..db.sources import SourceRepository
from ..db.vector_store import VectorStore
from ..embeddings.batcher import EmbeddingBatcher
from ..keys.store import ApiKeyStore
from ..providers.registry import get_provider
from .chunker import chunk_text
from .fetcher import ContentFetcher
from .locks import SourceLocks
from .notifications import ProgressBroadcaster, ProgressEvent

logger = logging.getLogger("concierge.ingestion")


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of one ingestion attempt."""
    source_id: uuid.UUID
    status: str
    progress: int
    total_chunks: int = 0
    error: Optional[str] = None


class IngestionOrchestrator:
    """
    Runs ingestions for knowledge sources.

    All collaborators are injected so the pipeline can be exercised without a
    database or network.
    """

    def __init__(
        self,
        sources: SourceRepository,
        documents: VectorStore,
        model_configs: ModelConfigService,
        keys: ApiKeyStore,
        fetcher: ContentFetcher,
        batcher: EmbeddingBatcher,
        broadcaster: ProgressBroadcaster,
        locks: SourceLocks,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> None:
        self._sources = sources
        self._documents = documents
        self._model_configs = model_configs
        self._keys = keys
        self._fetcher = fetcher
        self._batcher = batcher
        self._broadcaster = broadcaster
        self._locks = locks
        self._chunk_size = chunk_size or settings.chunk_size
        self._chunk_overlap = (
            settings.chunk_overlap if chunk_overlap is None else chunk_overlap
        )

    async def start_ingestion(self, source_id: uuid.UUID) -> IngestionResult:
        """
        Ingest (or re-ingest) a source.

        Returns
        -------
        IngestionResult
            Final status; failures are reported here, not raised.

        Raises
        ------
        IngestionInProgressError
            If the source is already being ingested.
        SourceNotFoundError
            If the source does not exist.
        """
        async with self._locks.hold(source_id):
            source = await self._sources.get(source_id)
            name = source.name

            await self._sources.mark_pending(source_id)
            await self._sources.mark_processing(source_id)
            self._broadcast(source_id, "processing", 0, f"Processing {name}")
            logger.info("Ingestion started for source %s (%s)", source_id, name)

            progress = _ProgressTracker(self, source_id)

            try:
                await self._documents.delete_source(source_id)

                text = await self._fetcher.fetch(source)

                chunks = chunk_text(text, self._chunk_size, self._chunk_overlap)
                if not chunks:
                    raise UnsupportedContentError(
                        f"No text content could be extracted from {name}"
                    )
                logger.info("Split source %s into %d chunks", source_id, len(chunks))

                config = await self._model_configs.get_embedding_config()
                provider = get_provider(config.provider)
                api_key = await self._keys.get_key(config.provider)

                vectors = await self._batcher.embed(
                    chunks,
                    provider=provider,
                    model=config.model,
                    api_key=api_key,
                    on_progress=progress.report,
                )

                for index, vector in enumerate(vectors):
                    if len(vector) != config.dimensions:
                        raise ConfigMismatchError(
                            f"Embedding model {config.model} returned {len(vector)} "
                            f"dimensions for chunk {index}, expected {config.dimensions}"
                        )

                total = await self._documents.replace_source(
                    source_id,
                    name,
                    chunks,
                    vectors,
                )

                await self._sources.mark_completed(source_id, total)
            except asyncio.CancelledError:
                error = "Ingestion was cancelled"
                logger.warning("Ingestion cancelled for source %s", source_id)
                try:
                    await self._sources.mark_failed(source_id, error)
                except Exception:
                    logger.exception("Could not record cancellation for source %s", source_id)
                self._broadcast(source_id, "failed", progress.value, error)
                raise
            except Exception as exc:
                error = str(exc) or type(exc).__name__
                logger.error(
                    "Ingestion failed for source %s (%s): %s",
                    source_id,
                    type(exc).__name__,
                    error,
                )
                await self._sources.mark_failed(source_id, error)
                self._broadcast(source_id, "failed", progress.value, error)
                return IngestionResult(
                    source_id=source_id,
                    status="failed",
                    progress=progress.value,
                    error=error,
                )

            message = f"Successfully processed knowledge source: {name}"
            self._broadcast(source_id, "completed", 100, message)
            logger.info("Ingestion completed for source %s: %d chunks", source_id, total)

            return IngestionResult(
                source_id=source_id,
                status="completed",
                progress=100,
                total_chunks=total,
            )

    def _broadcast(
        self,
        source_id: uuid.UUID,
        status: str,
        progress: int,
        message: str,
    ) -> None:
        try:
            self._broadcaster.publish(
                ProgressEvent(
                    source_id=str(source_id),
                    status=status,
                    progress=progress,
                    message=message,
                )
            )
        except Exception:
            logger.warning(
                "Progress broadcast failed for source %s",
                source_id,
                exc_info=True,
            )


class _ProgressTracker:
    """Progress sink handed to the batcher; persists forward moves only."""

    def __init__(self, orchestrator: IngestionOrchestrator, source_id: uuid.UUID) -> None:
        self._orchestrator = orchestrator
        self._source_id = source_id
        self.value = 0

    async def report(self, percent: int) -> None:
        if percent <= self.value:
            return

        self.value = percent
        await self._orchestrator._sources.update_progress(self._source_id, percent)
        self._orchestrator._broadcast(
            self._source_id,
            "processing",
            percent,
            f"Embedded {percent}% of chunks",
        )
