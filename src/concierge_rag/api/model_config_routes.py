"""
Model Configuration Routes

Read and save the active embedding and generation model configurations.

Changing the embedding model does not re-embed existing documents; sources
must be re-ingested before retrieval works with a model of a different
dimension.
"""

import logging
from typing import Annotated, Literal, Union

from fastapi import APIRouter, Depends

from .dependencies import get_model_config_service
from .models import ModelConfigRequest
from ..config import settings
from ..core.errors import UnsupportedProviderError
from ..db.model_configs import EmbeddingConfig, GenerationConfig, ModelConfigService
from ..providers.registry import get_provider

logger = logging.getLogger("concierge.api.model_config")

router = APIRouter(prefix="/model-config", tags=["model-config"])

Purpose = Literal["embedding", "generation"]


@router.get(
    "/{purpose}",
    response_model=Union[EmbeddingConfig, GenerationConfig],
    summary="Read the active configuration for a purpose",
)
async def get_model_config(
    purpose: Purpose,
    service: Annotated[ModelConfigService, Depends(get_model_config_service)],
) -> Union[EmbeddingConfig, GenerationConfig]:
    if purpose == "embedding":
        return await service.get_embedding_config()
    return await service.get_generation_config()


@router.put(
    "/{purpose}",
    response_model=Union[EmbeddingConfig, GenerationConfig],
    summary="Save the configuration for a purpose",
)
async def save_model_config(
    purpose: Purpose,
    req: ModelConfigRequest,
    service: Annotated[ModelConfigService, Depends(get_model_config_service)],
) -> Union[EmbeddingConfig, GenerationConfig]:
    """
    Upsert the configuration row and invalidate the cached value.

    Raises
    ------
    UnsupportedProviderError
        If the provider is unknown, or cannot embed when saving an embedding
        configuration.
    """
    provider = get_provider(req.provider)

    config: Union[EmbeddingConfig, GenerationConfig]
    if purpose == "embedding":
        if not provider.supports_embeddings:
            raise UnsupportedProviderError(
                f"Provider '{provider.name}' does not support embeddings"
            )
        config = EmbeddingConfig(
            provider=provider.name,
            model=req.model,
            dimensions=req.dimensions or settings.default_embedding_dimensions,
        )
    else:
        config = GenerationConfig(
            provider=provider.name,
            model=req.model,
            temperature=(
                settings.default_temperature if req.temperature is None else req.temperature
            ),
            max_tokens=req.max_tokens or settings.default_max_tokens,
        )

    await service.save(config)
    logger.info("Saved %s model config: %s/%s", purpose, config.provider, config.model)
    return config
