"""
API Key Store

Provider API keys are stored in `api_keys` as base64-encoded ciphertext of a
repeating-key XOR stream keyed by the process secret
(`settings.encryption_key`). Keys are decrypted only inside `get_key`,
immediately before the outbound call that needs them, and are never logged.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..core.errors import ApiKeyNotConfiguredError, ConciergeError
from ..db.models import ApiKey

logger = logging.getLogger("concierge.keys")

MIN_KEY_LENGTH = 20


class KeyDecryptionError(ConciergeError):
    error_code = "key_decryption_failed"
    http_status = 500


def _xor(data: bytes, secret: bytes) -> bytes:
    return bytes(b ^ secret[i % len(secret)] for i, b in enumerate(data))


def encrypt_api_key(api_key: str, secret: Optional[str] = None) -> str:
    secret = secret or settings.encryption_key.get_secret_value()
    cipher = _xor(api_key.encode("utf-8"), secret.encode("utf-8"))
    return base64.b64encode(cipher).decode("ascii")


def decrypt_api_key(encrypted: str, secret: Optional[str] = None) -> str:
    """
    Reverse `encrypt_api_key`.

    Raises
    ------
    KeyDecryptionError
        If the ciphertext is not valid base64 or does not decode to text.
    """
    secret = secret or settings.encryption_key.get_secret_value()
    try:
        cipher = base64.b64decode(encrypted.encode("ascii"), validate=True)
        return _xor(cipher, secret.encode("utf-8")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise KeyDecryptionError("Failed to decrypt API key") from exc


class ApiKeyStore:
    """
    Lookup of decrypted provider keys.
    """

    def __init__(self, session: AsyncSession, secret: Optional[str] = None) -> None:
        self._session = session
        self._secret = secret

    async def get_key(self, provider: str) -> str:
        """
        Return the decrypted key for `provider`.

        Raises
        ------
        ApiKeyNotConfiguredError
            If no key is stored for the provider or it has an invalid format.
        """
        result = await self._session.execute(
            select(ApiKey.api_key).where(ApiKey.provider == provider).limit(1)
        )
        encrypted = result.scalar_one_or_none()
        if not encrypted:
            raise ApiKeyNotConfiguredError(f"{provider} API key not configured")

        api_key = decrypt_api_key(encrypted, self._secret)
        if len(api_key) < MIN_KEY_LENGTH:
            raise ApiKeyNotConfiguredError(f"Invalid API key format for {provider}")
        return api_key

    async def save_key(self, provider: str, api_key: str) -> None:
        encrypted = encrypt_api_key(api_key, self._secret)
        stmt = pg_insert(ApiKey).values(provider=provider, api_key=encrypted)
        stmt = stmt.on_conflict_do_update(
            index_elements=[ApiKey.provider],
            set_={"api_key": encrypted},
        )
        await self._session.execute(stmt)
        await self._session.commit()
        logger.info("Stored API key for provider %s", provider)
