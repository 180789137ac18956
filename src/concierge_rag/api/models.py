"""
API Models

Pydantic models used for request/response validation across the knowledge
source, search, chat, model configuration and provider endpoints.

Design Goals
------------
- Strong typing
- Safe defaults (no shared mutable state)
- Clear schema documentation
- Explicit output contracts, decoupled from ORM rows
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------
# Generic Results
# ---------------------------------------------------------------------

class OperationResult(BaseModel):
    """
    Standardized mutation operation result.
    Used for delete-style and accepted-for-processing endpoints.
    """
    status: Literal["deleted", "accepted", "saved", "ok"]
    count: Optional[int] = Field(default=None, ge=0)
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------
# Knowledge Sources
# ---------------------------------------------------------------------

class SourceCreateRequest(BaseModel):
    """
    Register a knowledge source.

    URL sources need `url`; file sources need the already extracted text in
    `content`.
    """
    name: str = Field(..., min_length=1, max_length=500)
    type: Literal["file", "url"]
    url: Optional[str] = Field(default=None, max_length=2048)
    content: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_origin(self) -> "SourceCreateRequest":
        if self.type == "url":
            if not self.url or not self.url.startswith(("http://", "https://")):
                raise ValueError("url sources require an http(s) url")
        elif not self.content or not self.content.strip():
            raise ValueError("file sources require extracted content")
        return self


class SourceResponse(BaseModel):
    """
    Public view of a knowledge source row.
    """
    id: uuid.UUID
    name: str
    type: Literal["file", "url"]
    url: Optional[str] = None
    status: Literal["pending", "processing", "completed", "failed"]
    progress: int = Field(..., ge=0, le=100)
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "SourceResponse":
        return cls(
            id=row.id,
            name=row.name,
            type=row.type,
            url=row.url,
            status=row.status,
            progress=row.progress,
            error=row.error,
            metadata=row.metadata_,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


# ---------------------------------------------------------------------
# Search Models
# ---------------------------------------------------------------------

class SearchRequest(BaseModel):
    """
    Similarity search request.
    """
    query: str = Field(..., min_length=1, max_length=5000)
    top_k: Optional[int] = Field(default=None, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid")


class SearchResult(BaseModel):
    """
    Individual search match.
    """
    content: str
    source_id: uuid.UUID
    similarity: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------
# Chat Models
# ---------------------------------------------------------------------

class ChatRequest(BaseModel):
    """
    One chat turn.
    """
    conversation_id: uuid.UUID
    message: str = Field(..., min_length=1, max_length=5000)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _reject_blank(self) -> "ChatRequest":
        if not self.message.strip():
            raise ValueError("message must not be blank")
        return self


# ---------------------------------------------------------------------
# Model Configuration
# ---------------------------------------------------------------------

class ModelConfigRequest(BaseModel):
    """
    Save the configuration for one purpose. Fields that do not apply to the
    purpose are ignored (dimensions for generation, sampling for embedding).
    """
    provider: str = Field(..., min_length=1, max_length=50)
    model: str = Field(..., min_length=1, max_length=100)
    dimensions: Optional[int] = Field(default=None, ge=1)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)

    model_config = ConfigDict(extra="forbid", protected_namespaces=())


# ---------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------

class ApiKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=20, max_length=500)

    model_config = ConfigDict(extra="forbid")


class KeyTestRequest(BaseModel):
    """
    Optional key to test instead of the stored one.
    """
    api_key: Optional[str] = Field(default=None, min_length=1, max_length=500)

    model_config = ConfigDict(extra="forbid")


class ModelListResponse(BaseModel):
    provider: str
    models: List[str]
