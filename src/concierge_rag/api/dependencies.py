"""
FastAPI Dependencies

Wires request-scoped services to the per-request database session and the
process-wide singletons (caches, rate limiter, progress broadcaster, source
locks). Tests replace any of these through `app.dependency_overrides`.
"""

from functools import lru_cache
from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..chat.service import ChatService
from ..chat.streamer import GenerationStreamer
from ..config import settings
from ..core.cache import TTLCache
from ..core.errors import RateLimitExceededError
from ..core.rate_limiter import InMemoryRateLimiter, RateLimit, RateLimiter
from ..db import VectorStore, get_async_session
from ..db.conversations import ConversationStore
from ..db.model_configs import ModelConfigService
from ..db.sources import SourceRepository
from ..ingestion.locks import SourceLocks, source_locks
from ..ingestion.notifications import ProgressBroadcaster, progress_broadcaster
from ..keys.store import ApiKeyStore
from ..llm.client import GenerationClient
from ..providers.service import ProviderService
from ..retrieval.retriever import Retriever


# ---------------------------------------------------------------------
# Process-wide singletons
# ---------------------------------------------------------------------

@lru_cache
def get_config_cache() -> TTLCache:
    return TTLCache(ttl=settings.model_cache_ttl)


@lru_cache
def get_model_list_cache() -> TTLCache:
    return TTLCache(ttl=settings.model_cache_ttl)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    window = settings.rate_limit_window
    return InMemoryRateLimiter(
        {
            "ingest": RateLimit(settings.ingest_rate_limit, window),
            "chat": RateLimit(settings.chat_rate_limit, window),
            "test-key": RateLimit(settings.key_test_rate_limit, window),
        }
    )


@lru_cache
def get_generation_client() -> GenerationClient:
    return GenerationClient()


def get_broadcaster() -> ProgressBroadcaster:
    return progress_broadcaster


def get_source_locks() -> SourceLocks:
    return source_locks


# ---------------------------------------------------------------------
# Request-scoped services
# ---------------------------------------------------------------------

def get_source_repository(
    session: AsyncSession = Depends(get_async_session),
) -> SourceRepository:
    return SourceRepository(session)


def get_vector_store(
    session: AsyncSession = Depends(get_async_session),
) -> VectorStore:
    return VectorStore(session)


def get_model_config_service(
    session: AsyncSession = Depends(get_async_session),
    cache: TTLCache = Depends(get_config_cache),
) -> ModelConfigService:
    return ModelConfigService(session, cache)


def get_api_key_store(
    session: AsyncSession = Depends(get_async_session),
) -> ApiKeyStore:
    return ApiKeyStore(session)


def get_retriever(
    documents: VectorStore = Depends(get_vector_store),
    model_configs: ModelConfigService = Depends(get_model_config_service),
    keys: ApiKeyStore = Depends(get_api_key_store),
) -> Retriever:
    return Retriever(documents, model_configs, keys)


def get_chat_service(
    session: AsyncSession = Depends(get_async_session),
    retriever: Retriever = Depends(get_retriever),
    model_configs: ModelConfigService = Depends(get_model_config_service),
    keys: ApiKeyStore = Depends(get_api_key_store),
    client: GenerationClient = Depends(get_generation_client),
) -> ChatService:
    conversations = ConversationStore(session)
    return ChatService(
        conversations=conversations,
        retriever=retriever,
        model_configs=model_configs,
        keys=keys,
        streamer=GenerationStreamer(client, conversations),
    )


def get_provider_service(
    keys: ApiKeyStore = Depends(get_api_key_store),
    cache: TTLCache = Depends(get_model_list_cache),
) -> ProviderService:
    return ProviderService(keys, cache)


# ---------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------

def client_address(request: Request) -> str:
    """
    Best-effort caller address: first hop of X-Forwarded-For, else the
    socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def rate_limited(operation: str) -> Callable:
    """
    Create a FastAPI dependency that counts one request against the
    caller's limit for `operation`.

    Example:
        @router.post("/chat", dependencies=[Depends(rate_limited("chat"))])
        async def chat(...):
            ...

    Raises
    ------
    RateLimitExceededError
        When the caller has exhausted the current window.
    """

    def check_rate_limit(
        request: Request,
        limiter: RateLimiter = Depends(get_rate_limiter),
    ) -> None:
        if not limiter.hit(client_address(request), operation):
            raise RateLimitExceededError(
                f"Too many {operation} requests, please try again later"
            )

    return check_rate_limit
