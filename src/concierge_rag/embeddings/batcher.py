"""
Embedding Batcher

Embeds an ordered sequence of chunks through a provider in fixed-size,
sequential batches and reports progress after every batch.

Batches are issued one at a time to stay under provider per-minute limits and
keep reported progress monotonic. The batcher never writes state itself; it
only calls the progress sink supplied by the caller. Any provider failure
aborts the whole operation with no partial retry.
"""

from __future__ import annotations

import logging
import math
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx

from ..config import settings
from ..providers.registry import Provider

logger = logging.getLogger("concierge.embedder")

ProgressSink = Callable[[int], Awaitable[None]]


def progress_percent(processed: int, total: int) -> int:
    """
    Percentage of `processed` out of `total`, rounded half up.
    """
    if total <= 0:
        return 100
    return int(math.floor(processed * 100 / total + 0.5))


class EmbeddingBatcher:
    """
    Sequential batch embedding with progress reporting.

    The class is stateless and safe to reuse across ingestions.
    """

    def __init__(
        self,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Parameters
        ----------
        batch_size : Optional[int]
            Chunks per provider request. Defaults to settings.embedding_batch_size.

        timeout : Optional[float]
            HTTP timeout for each batch request.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom transport, used by tests to stub the provider.
        """
        self.batch_size = batch_size or settings.embedding_batch_size
        self.timeout = timeout or settings.embedding_timeout
        self._transport = transport

        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")

    async def embed(
        self,
        chunks: Sequence[str],
        provider: Provider,
        model: str,
        api_key: str,
        on_progress: Optional[ProgressSink] = None,
        purpose: str = "document",
    ) -> List[List[float]]:
        """
        Generate embeddings for all chunks.

        Parameters
        ----------
        chunks : Sequence[str]
            Texts to embed, in order.
        provider : Provider
            Provider variant to call.
        model : str
            Embedding model name.
        api_key : str
            Decrypted provider API key.
        on_progress : Optional[ProgressSink]
            Awaited with the rounded percentage after each batch.

        Returns
        -------
        List[List[float]]
            One vector per chunk, same order as `chunks`.

        Raises
        ------
        EmbeddingProviderError
            If any batch fails or returns a malformed response.
        UnsupportedProviderError
            If the provider cannot embed.
        """
        if not chunks:
            return []

        total = len(chunks)
        vectors: List[List[float]] = []

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            for start in range(0, total, self.batch_size):
                batch = list(chunks[start : start + self.batch_size])

                batch_vectors = await provider.embed(
                    batch,
                    model=model,
                    api_key=api_key,
                    client=client,
                    purpose=purpose,
                )
                vectors.extend(batch_vectors)

                processed = len(vectors)
                logger.debug(
                    "Embedded batch %d-%d of %d via %s",
                    start,
                    processed - 1,
                    total,
                    provider.name,
                )

                if on_progress is not None:
                    await on_progress(progress_percent(processed, total))

        return vectors
