"""
Shared test doubles.

In-memory stand-ins for the relational collaborators plus a stub embedding
provider served through httpx.MockTransport, so the ingestion and retrieval
pipelines run without a database or network.
"""

import json
import uuid
from types import SimpleNamespace
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from concierge_rag.core.errors import SourceNotFoundError
from concierge_rag.db.model_configs import EmbeddingConfig, ModelConfigService
from concierge_rag.keys.store import ApiKeyStore

TEST_API_KEY = "sk-test-0123456789abcdefghij"


class FakeSourceRepository:
    """Records every state write in `history`."""

    def __init__(self):
        self.rows: Dict[uuid.UUID, SimpleNamespace] = {}
        self.history: List[tuple] = []

    def add(self, kind="url", url="https://example.com/doc", content=None, name="Doc"):
        source = SimpleNamespace(
            id=uuid.uuid4(),
            name=name,
            type=kind,
            url=url,
            content=content,
            status="pending",
            progress=0,
            error=None,
            metadata_=None,
        )
        self.rows[source.id] = source
        return source

    async def get(self, source_id):
        if source_id not in self.rows:
            raise SourceNotFoundError(f"Knowledge source {source_id} not found")
        return self.rows[source_id]

    async def mark_pending(self, source_id):
        self._set(source_id, status="pending", progress=0, error=None)

    async def mark_processing(self, source_id):
        self._set(source_id, status="processing", progress=0, error=None)

    async def update_progress(self, source_id, progress):
        self._set(source_id, progress=progress)

    async def mark_completed(self, source_id, total_chunks):
        self._set(
            source_id,
            status="completed",
            progress=100,
            error=None,
            metadata_={"total_chunks": total_chunks},
        )

    async def mark_failed(self, source_id, error):
        self._set(source_id, status="failed", error=error)

    def _set(self, source_id, **values):
        row = self.rows[source_id]
        for key, value in values.items():
            setattr(row, key, value)
        self.history.append((row.status, row.progress))

    @property
    def statuses(self) -> List[str]:
        result: List[str] = []
        for status, _ in self.history:
            if not result or result[-1] != status:
                result.append(status)
        return result


class FakeVectorStore:
    def __init__(self):
        self.documents: Dict[uuid.UUID, List[tuple]] = {}
        self.match_results = []

    async def delete_source(self, source_id):
        return len(self.documents.pop(source_id, []))

    async def replace_source(self, source_id, source_name, chunks, embeddings):
        self.documents[source_id] = list(zip(chunks, embeddings))
        return len(chunks)

    async def stored_dimensions(self) -> List[int]:
        return sorted({len(vector) for rows in self.documents.values() for _, vector in rows})

    async def match(self, query_embedding, threshold, top_k):
        return self.match_results[:top_k]


def embedding_transport(dimensions: int, calls: Optional[list] = None) -> httpx.MockTransport:
    """
    OpenAI-style embedding endpoint returning `dimensions`-long vectors.
    Each request body is appended to `calls` when given.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if calls is not None:
            calls.append(body)
        data = [
            {"index": i, "embedding": [float(i + 1)] * dimensions}
            for i, _ in enumerate(body["input"])
        ]
        return httpx.Response(200, json={"data": data})

    return httpx.MockTransport(handler)


@pytest.fixture
def sources():
    return FakeSourceRepository()


@pytest.fixture
def documents():
    return FakeVectorStore()


@pytest.fixture
def keys():
    mock = AsyncMock(spec=ApiKeyStore)
    mock.get_key.return_value = TEST_API_KEY
    return mock


@pytest.fixture
def model_configs():
    mock = AsyncMock(spec=ModelConfigService)
    mock.get_embedding_config.return_value = EmbeddingConfig(
        provider="openai",
        model="text-embedding-3-small",
        dimensions=3,
    )
    return mock


@pytest.fixture
def make_embedding_transport():
    return embedding_transport
