"""
Knowledge Source Repository

Reads and writes `knowledge_sources` rows. Every status/progress write is
committed immediately so that other sessions observe live ingestion state.
"""

from __future__ import annotations

import uuid
from typing import List, Optional

from sqlalchemy import select, delete, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import KnowledgeSource, Document
from ..core.errors import PersistenceError, SourceNotFoundError


class SourceRepository:
    """
    Persistence operations for knowledge sources.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, source_id: uuid.UUID) -> KnowledgeSource:
        """
        Return the source row.

        Raises
        ------
        SourceNotFoundError
            If no source exists with this id.
        """
        source = await self._session.get(KnowledgeSource, source_id)
        if source is None:
            raise SourceNotFoundError(f"Knowledge source {source_id} not found")
        return source

    async def list(self) -> List[KnowledgeSource]:
        result = await self._session.execute(
            select(KnowledgeSource).order_by(KnowledgeSource.created_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Creation / deletion
    # ------------------------------------------------------------------

    async def create(
        self,
        name: str,
        kind: str,
        url: Optional[str] = None,
        content: Optional[str] = None,
    ) -> KnowledgeSource:
        source = KnowledgeSource(
            id=uuid.uuid4(),
            name=name,
            type=kind,
            url=url,
            content=content,
            status="pending",
            progress=0,
        )
        self._session.add(source)
        await self._commit()
        # Load server-side timestamps
        await self._session.refresh(source)
        return source

    async def delete(self, source_id: uuid.UUID) -> int:
        """
        Delete one source and its documents. Returns the number of
        deleted documents.
        """
        await self.get(source_id)

        doc_count = await self._count_documents(Document.source_id == source_id)
        await self._execute(delete(Document).where(Document.source_id == source_id))
        await self._execute(delete(KnowledgeSource).where(KnowledgeSource.id == source_id))
        await self._commit()
        return doc_count

    async def delete_all(self) -> int:
        """
        Delete every source and document. Returns the number of deleted sources.
        """
        result = await self._session.execute(select(func.count()).select_from(KnowledgeSource))
        source_count = result.scalar() or 0

        await self._execute(delete(Document))
        await self._execute(delete(KnowledgeSource))
        await self._commit()
        return source_count

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def mark_pending(self, source_id: uuid.UUID) -> None:
        await self._update(source_id, status="pending", progress=0, error=None)

    async def mark_processing(self, source_id: uuid.UUID) -> None:
        await self._update(source_id, status="processing", progress=0, error=None)

    async def update_progress(self, source_id: uuid.UUID, progress: int) -> None:
        await self._update(source_id, progress=progress)

    async def mark_completed(self, source_id: uuid.UUID, total_chunks: int) -> None:
        source = await self.get(source_id)
        metadata = dict(source.metadata_ or {})
        metadata["total_chunks"] = total_chunks
        await self._update(
            source_id,
            status="completed",
            progress=100,
            error=None,
            metadata_=metadata,
        )

    async def mark_failed(self, source_id: uuid.UUID, error: str) -> None:
        """Record a failure. Progress keeps its last value."""
        await self._update(source_id, status="failed", error=error)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _update(self, source_id: uuid.UUID, **values) -> None:
        columns = {getattr(KnowledgeSource, key): value for key, value in values.items()}
        columns[KnowledgeSource.updated_at] = func.now()
        stmt = (
            update(KnowledgeSource)
            .where(KnowledgeSource.id == source_id)
            .values(columns)
        )
        await self._execute(stmt)
        await self._commit()

    async def _count_documents(self, clause) -> int:
        result = await self._session.execute(
            select(func.count()).select_from(Document).where(clause)
        )
        return result.scalar() or 0

    async def _execute(self, stmt) -> None:
        try:
            await self._session.execute(stmt)
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(str(exc)) from exc

    async def _commit(self) -> None:
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(str(exc)) from exc
