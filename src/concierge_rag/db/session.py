"""
Database Session Management

One async engine per process, shared by two kinds of session:

- Request sessions, yielded by `get_async_session` and injected into the
  repositories built in `api/dependencies.py`. Repositories commit their own
  writes (every ingestion state change is visible to other sessions as soon
  as it happens), so the commit at the end of the request only flushes
  whatever a handler left pending.
- Background sessions, opened directly from `AsyncSessionLocal` by the
  ingestion worker (which the re-ingest script also runs). A background ingestion outlives
  the request that scheduled it and must not share that request's session.

Rows are not expired on commit: a source row is read again after its status
writes (progress, completion metadata) without a reload.
"""

from __future__ import annotations

from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)

from ..config import settings


async_engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
)

AsyncSessionLocal = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session for the API dependencies.

    Rolls back and re-raises when the handler (or a streamed chat response,
    which keeps the session open until the last event) fails.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
