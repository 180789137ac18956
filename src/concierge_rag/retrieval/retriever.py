"""
Retriever

Embeds a query with the configured embedding provider and asks the vector
store for the most similar chunks above a threshold.

The query vector must have the same dimension as the stored vectors; a
mismatch raises ConfigMismatchError instead of returning mis-scored results.
An empty result is valid and means no grounding context is available.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx

from ..config import settings
from ..core.errors import ConfigMismatchError, EmbeddingProviderError
from ..db.model_configs import ModelConfigService
from ..db.vector_store import ChunkMatch, VectorStore
from ..keys.store import ApiKeyStore
from ..providers.registry import get_provider

logger = logging.getLogger("concierge.retriever")


class Retriever:
    """
    Similarity retrieval over ingested chunks.
    """

    def __init__(
        self,
        documents: VectorStore,
        model_configs: ModelConfigService,
        keys: ApiKeyStore,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._documents = documents
        self._model_configs = model_configs
        self._keys = keys
        self._timeout = timeout or settings.embedding_timeout
        self._transport = transport

    async def embed_query(self, query: str) -> List[float]:
        config = await self._model_configs.get_embedding_config()
        provider = get_provider(config.provider)
        api_key = await self._keys.get_key(config.provider)

        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            vectors = await provider.embed(
                [query],
                model=config.model,
                api_key=api_key,
                client=client,
                purpose="query",
            )

        if not vectors:
            raise EmbeddingProviderError("Embedding provider returned no vector for query.")

        vector = vectors[0]
        if len(vector) != config.dimensions:
            raise ConfigMismatchError(
                f"Query embedding has {len(vector)} dimensions but {config.model} "
                f"is configured for {config.dimensions}"
            )
        return vector

    async def retrieve(
        self,
        query: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[ChunkMatch]:
        """
        Return up to `top_k` chunks with similarity above `threshold`,
        most similar first.

        Raises
        ------
        ConfigMismatchError
            If the query dimension differs from any stored vector.
        EmbeddingProviderError
            If the query could not be embedded.
        """
        top_k = top_k or settings.retrieval_top_k
        threshold = settings.retrieval_threshold if threshold is None else threshold

        vector = await self.embed_query(query)

        stored = await self._documents.stored_dimensions()
        if not stored:
            logger.info("Knowledge base is empty, no context retrieved")
            return []

        mismatched = [dim for dim in stored if dim != len(vector)]
        if mismatched:
            raise ConfigMismatchError(
                f"Query embedding has {len(vector)} dimensions but stored "
                f"documents have {', '.join(str(dim) for dim in stored)}; re-ingest "
                f"sources after changing the embedding model"
            )

        matches = await self._documents.match(vector, threshold=threshold, top_k=top_k)
        logger.info(
            "Retrieved %d chunks (top_k=%d, threshold=%.2f)",
            len(matches),
            top_k,
            threshold,
        )
        return matches
