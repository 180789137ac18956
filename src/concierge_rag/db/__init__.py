"""
Database Package

Provides SQLAlchemy async session management and model definitions
for PostgreSQL with pgvector.
"""

from .session import get_async_session, async_engine, AsyncSessionLocal
from .models import (
    Base,
    KnowledgeSource,
    Document,
    ModelConfiguration,
    ApiKey,
    Conversation,
    Message,
)
from .vector_store import VectorStore, ChunkMatch

__all__ = [
    "get_async_session",
    "async_engine",
    "AsyncSessionLocal",
    "Base",
    "KnowledgeSource",
    "Document",
    "ModelConfiguration",
    "ApiKey",
    "Conversation",
    "Message",
    "VectorStore",
    "ChunkMatch",
]
