"""
Model Configuration Service

Reads the singleton `model_configurations` row per purpose, falling back to
settings defaults when none exists. Results are cached in an injected
TTLCache; saving a configuration invalidates its cache entry.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from pydantic import BaseModel, Field, ConfigDict
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import ModelConfiguration
from ..config import settings
from ..core.cache import TTLCache
from ..core.errors import PersistenceError

logger = logging.getLogger("concierge.model_config")


class EmbeddingConfig(BaseModel):
    provider: str = Field(..., min_length=1, max_length=50)
    model: str = Field(..., min_length=1, max_length=100)
    dimensions: int = Field(..., ge=1)

    model_config = ConfigDict(frozen=True, protected_namespaces=())


class GenerationConfig(BaseModel):
    provider: str = Field(..., min_length=1, max_length=50)
    model: str = Field(..., min_length=1, max_length=100)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)

    model_config = ConfigDict(frozen=True, protected_namespaces=())


def default_embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(
        provider=settings.default_embedding_provider,
        model=settings.default_embedding_model,
        dimensions=settings.default_embedding_dimensions,
    )


def default_generation_config() -> GenerationConfig:
    return GenerationConfig(
        provider=settings.default_generation_provider,
        model=settings.default_generation_model,
        temperature=settings.default_temperature,
        max_tokens=settings.default_max_tokens,
    )


class ModelConfigService:
    """
    Cached access to the embedding and generation configurations.
    """

    def __init__(self, session: AsyncSession, cache: TTLCache) -> None:
        self._session = session
        self._cache = cache

    async def get_embedding_config(self) -> EmbeddingConfig:
        cached = self._cache.get("embedding")
        if cached is not None:
            return cached

        row = await self._load("embedding")
        if row is None:
            config = default_embedding_config()
        else:
            config = EmbeddingConfig(
                provider=row.provider,
                model=row.model,
                dimensions=row.dimensions or settings.default_embedding_dimensions,
            )

        self._cache.set("embedding", config)
        return config

    async def get_generation_config(self) -> GenerationConfig:
        cached = self._cache.get("generation")
        if cached is not None:
            return cached

        row = await self._load("generation")
        if row is None:
            config = default_generation_config()
        else:
            config = GenerationConfig(
                provider=row.provider,
                model=row.model,
                temperature=(
                    row.temperature if row.temperature is not None
                    else settings.default_temperature
                ),
                max_tokens=row.max_tokens or settings.default_max_tokens,
            )

        self._cache.set("generation", config)
        return config

    async def save(self, config: Union[EmbeddingConfig, GenerationConfig]) -> None:
        """
        Upsert the configuration row for the config's purpose.
        """
        if isinstance(config, EmbeddingConfig):
            purpose = "embedding"
            values = {"dimensions": config.dimensions}
        else:
            purpose = "generation"
            values = {
                "temperature": config.temperature,
                "max_tokens": config.max_tokens,
            }

        values.update(provider=config.provider, model=config.model)

        stmt = pg_insert(ModelConfiguration).values(type=purpose, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ModelConfiguration.type],
            set_=values,
        )

        try:
            await self._session.execute(stmt)
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError(f"Failed to save {purpose} configuration: {exc}") from exc
        finally:
            self._cache.invalidate(purpose)

        logger.info("Saved %s configuration: %s/%s", purpose, config.provider, config.model)

    async def _load(self, purpose: str) -> Optional[ModelConfiguration]:
        result = await self._session.execute(
            select(ModelConfiguration).where(ModelConfiguration.type == purpose)
        )
        return result.scalar_one_or_none()
