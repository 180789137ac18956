"""
Vector Store

PostgreSQL + pgvector storage of document chunks and their embeddings,
plus the similarity-search contract used by the retriever.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional, Sequence

from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Document
from ..core.errors import PersistenceError


class ChunkMatch(NamedTuple):
    """A retrieved chunk with its cosine similarity to the query."""
    content: str
    source_id: uuid.UUID
    metadata: Optional[dict]
    similarity: float


class VectorStore:
    """
    PostgreSQL-backed store for document chunks using pgvector for
    similarity search.
    """

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize with an async database session.

        Parameters
        ----------
        session : AsyncSession
            SQLAlchemy async session for database operations.
        """
        self._session = session

    async def delete_source(self, source_id: uuid.UUID) -> int:
        """
        Remove all chunks for a given source and commit.

        Returns the number of deleted rows.
        """
        stmt = delete(Document).where(Document.source_id == source_id)
        try:
            result = await self._session.execute(stmt)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(f"Failed to delete documents: {exc}") from exc
        return result.rowcount

    async def replace_source(
        self,
        source_id: uuid.UUID,
        source_name: str,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
    ) -> int:
        """
        Replace every chunk of a source in a single transaction.

        Existing rows are deleted and the new chunks inserted before one
        commit, so readers never observe a mix of old and new chunks.

        Parameters
        ----------
        source_id : uuid.UUID
            Owning knowledge source.
        source_name : str
            Recorded in each chunk's metadata.
        chunks : Sequence[str]
            Chunk texts in reading order.
        embeddings : Sequence[Sequence[float]]
            Vectors parallel to `chunks`.

        Returns
        -------
        int
            Number of chunks inserted.
        """
        if len(chunks) != len(embeddings):
            raise PersistenceError(
                f"Chunk/embedding count mismatch: {len(chunks)} != {len(embeddings)}"
            )

        processed_at = datetime.now(timezone.utc).isoformat()
        total = len(chunks)

        try:
            await self._session.execute(
                delete(Document).where(Document.source_id == source_id)
            )
            for index, (chunk, vector) in enumerate(zip(chunks, embeddings)):
                self._session.add(
                    Document(
                        source_id=source_id,
                        content=chunk,
                        embedding=list(vector),
                        metadata_={
                            "chunk_index": index,
                            "total_chunks": total,
                            "source_name": source_name,
                            "processed_at": processed_at,
                        },
                    )
                )
            await self._session.flush()
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(f"Failed to store document chunks: {exc}") from exc

        return total

    async def stored_dimensions(self) -> List[int]:
        """
        Return the distinct dimensions of the stored vectors, smallest first.

        More than one value means sources were embedded with different
        models and some of them must be re-ingested.
        """
        dims = func.vector_dims(Document.embedding)
        stmt = select(dims).distinct().order_by(dims)
        result = await self._session.execute(stmt)
        return [int(value) for value in result.scalars().all()]

    async def match(
        self,
        query_embedding: List[float],
        threshold: float,
        top_k: int,
    ) -> List[ChunkMatch]:
        """
        Search for chunks using cosine similarity.

        Parameters
        ----------
        query_embedding : List[float]
            Query vector.
        threshold : float
            Minimum similarity (exclusive) for a chunk to be returned.
        top_k : int
            Maximum number of results.

        Returns
        -------
        List[ChunkMatch]
            Matches ordered by descending similarity.
        """
        # pgvector's <=> operator
        cosine_distance = Document.embedding.cosine_distance(query_embedding)
        similarity = (1 - cosine_distance).label("similarity")

        stmt = (
            select(
                Document.content,
                Document.source_id,
                Document.metadata_.label("chunk_metadata"),
                similarity,
            )
            .where(func.vector_dims(Document.embedding) == len(query_embedding))
            .where(1 - cosine_distance > threshold)
            .order_by(cosine_distance)
            .limit(top_k)
        )

        result = await self._session.execute(stmt)

        return [
            ChunkMatch(
                content=row.content,
                source_id=row.source_id,
                metadata=row.chunk_metadata,
                similarity=float(row.similarity),
            )
            for row in result.all()
        ]
