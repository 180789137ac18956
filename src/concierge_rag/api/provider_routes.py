"""
Provider Routes

This module exposes endpoints for:
- Storing a provider API key (encrypted at rest)
- Testing a key by listing the provider's models
- Listing a provider's models with the stored key (cached)
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, Body, Depends

from .dependencies import get_api_key_store, get_provider_service, rate_limited
from .models import ApiKeyRequest, KeyTestRequest, ModelListResponse, OperationResult
from ..keys.store import ApiKeyStore
from ..providers.registry import get_provider
from ..providers.service import KeyTestResult, ProviderService

logger = logging.getLogger("concierge.api.providers")

router = APIRouter(prefix="/providers", tags=["providers"])


@router.put(
    "/{name}/key",
    response_model=OperationResult,
    summary="Store the API key for a provider",
)
async def save_api_key(
    name: str,
    req: ApiKeyRequest,
    keys: Annotated[ApiKeyStore, Depends(get_api_key_store)],
) -> OperationResult:
    provider = get_provider(name)
    await keys.save_key(provider.name, req.api_key.strip())
    logger.info("Stored API key for provider %s", provider.name)
    return OperationResult(status="saved", details={"provider": provider.name})


@router.post(
    "/{name}/test-key",
    response_model=KeyTestResult,
    summary="Validate an API key by listing the provider's models",
    dependencies=[Depends(rate_limited("test-key"))],
)
async def test_api_key(
    name: str,
    service: Annotated[ProviderService, Depends(get_provider_service)],
    req: Optional[KeyTestRequest] = Body(default=None),
) -> KeyTestResult:
    """
    Test the key in the request body, or the stored key when none is given.

    Returns
    -------
    KeyTestResult
        `valid=False` with the failure `kind` when the provider rejects the
        key; the request itself still succeeds.
    """
    api_key = req.api_key if req is not None else None
    return await service.test_key(name, api_key)


@router.get(
    "/{name}/models",
    response_model=ModelListResponse,
    summary="List a provider's models using the stored key",
)
async def list_models(
    name: str,
    service: Annotated[ProviderService, Depends(get_provider_service)],
) -> ModelListResponse:
    models = await service.list_models(name)
    return ModelListResponse(provider=get_provider(name).name, models=models)
