"""
Provider Key Testing and Model Listing

A key test issues one authenticated model-listing request to the provider.
Successful listings are cached per provider in an injected TTLCache, so the
model picker does not hit the provider on every page load.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel

from ..config import settings
from ..core.cache import TTLCache
from ..core.errors import GenerationProviderError
from ..keys.store import ApiKeyStore
from .registry import get_provider

logger = logging.getLogger("concierge.providers")


class KeyTestResult(BaseModel):
    provider: str
    valid: bool
    models: List[str] = []
    error: Optional[str] = None
    kind: Optional[str] = None


class ProviderService:
    """
    Key validation and cached model listing for registered providers.
    """

    def __init__(
        self,
        keys: ApiKeyStore,
        cache: TTLCache,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._keys = keys
        self._cache = cache
        self._timeout = timeout or settings.fetch_timeout
        self._transport = transport

    async def test_key(self, provider_name: str, api_key: Optional[str] = None) -> KeyTestResult:
        """
        Validate `api_key` (or the stored key when omitted) against the
        provider.

        Provider rejections are reported in the result rather than raised, so
        a caller can show "invalid key" next to the form field.

        Raises
        ------
        UnsupportedProviderError
            If the provider is unknown.
        ApiKeyNotConfiguredError
            If no key was supplied and none is stored.
        """
        provider = get_provider(provider_name)
        key = api_key or await self._keys.get_key(provider.name)

        try:
            models = await self._fetch_models(provider.name, key)
        except GenerationProviderError as exc:
            logger.info("Key test for %s failed (%s)", provider.name, exc.kind)
            return KeyTestResult(
                provider=provider.name,
                valid=False,
                error=str(exc),
                kind=exc.kind,
            )

        logger.info("Key test for %s succeeded (%d models)", provider.name, len(models))
        return KeyTestResult(provider=provider.name, valid=True, models=models)

    async def list_models(self, provider_name: str) -> List[str]:
        """
        Return the provider's model ids using the stored key, from cache when
        fresh.
        """
        provider = get_provider(provider_name)

        cached = self._cache.get(("models", provider.name))
        if cached is not None:
            return cached

        key = await self._keys.get_key(provider.name)
        models = await self._fetch_models(provider.name, key)
        self._cache.set(("models", provider.name), models)
        return models

    async def _fetch_models(self, provider_name: str, api_key: str) -> List[str]:
        provider = get_provider(provider_name)
        async with httpx.AsyncClient(
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            models = await provider.list_models(api_key, client)
        return sorted(models)
