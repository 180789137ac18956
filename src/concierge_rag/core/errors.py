"""
Error Taxonomy and Global Error Handling

This module defines the domain exceptions raised by the ingestion and
generation pipelines, plus the application-wide exception handlers that
translate them into HTTP responses.

Design Goals
------------
- One exception class per failure kind so callers can react precisely
- Never leak internal exception details for unexpected failures
- Always return deterministic, machine-readable error responses
- Log full stack traces internally for debugging
"""

from __future__ import annotations

import logging
from typing import Dict, Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("concierge.errors")


# ---------------------------------------------------------------------
# Domain Exceptions
# ---------------------------------------------------------------------

class ConciergeError(RuntimeError):
    """Base class for all domain errors."""

    error_code = "concierge_error"
    http_status = 500


class FetchError(ConciergeError):
    """Raised when a source URL cannot be retrieved."""

    error_code = "fetch_failed"
    http_status = 502

    def __init__(self, message: str, url: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class UnsupportedContentError(ConciergeError):
    """Raised for content types the fetcher cannot turn into text."""

    error_code = "unsupported_content"
    http_status = 415


class UnsupportedProviderError(ConciergeError):
    """Raised when a provider name (or capability) is not supported."""

    error_code = "unsupported_provider"
    http_status = 400


class EmbeddingProviderError(ConciergeError):
    """Raised when the embedding provider rejects a request or returns garbage."""

    error_code = "embedding_provider_error"
    http_status = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GenerationProviderError(ConciergeError):
    """
    Raised when the generation provider fails.

    `kind` lets callers distinguish authentication, permission, not-found and
    rate-limit failures from generic provider, network and stream failures.
    """

    error_code = "generation_provider_error"
    http_status = 502

    _KIND_BY_STATUS = {
        401: "authentication",
        403: "permission",
        404: "not_found",
        429: "rate_limit",
    }

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        kind: Optional[str] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.kind = kind or self._KIND_BY_STATUS.get(status_code, "provider")

    @classmethod
    def from_status(cls, status_code: int, body: str) -> "GenerationProviderError":
        messages = {
            401: "Generation provider rejected the API key.",
            403: "API key is not permitted to use this model.",
            404: "Generation model or endpoint not found.",
            429: "Generation provider rate limit exceeded, retry later.",
        }
        message = messages.get(
            status_code,
            f"Generation provider returned HTTP {status_code}.",
        )
        return cls(message, status_code=status_code, body=body)


class ConfigMismatchError(ConciergeError):
    """Raised when query and stored embedding dimensions disagree."""

    error_code = "config_mismatch"
    http_status = 409


class PersistenceError(ConciergeError):
    """Raised when the relational store rejects a write."""

    error_code = "persistence_error"
    http_status = 500


class SourceNotFoundError(ConciergeError):
    error_code = "source_not_found"
    http_status = 404


class IngestionInProgressError(ConciergeError):
    """Raised when a source is already being ingested by another request."""

    error_code = "ingestion_in_progress"
    http_status = 409


class ApiKeyNotConfiguredError(ConciergeError):
    error_code = "api_key_not_configured"
    http_status = 400


class RateLimitExceededError(ConciergeError):
    error_code = "rate_limited"
    http_status = 429


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

async def concierge_error_handler(
    request: Request,
    exc: ConciergeError,
) -> JSONResponse:
    """
    Translate a domain error into a structured JSON response.

    Generation errors additionally expose their `kind` so the caller can
    decide between re-authentication and backoff.
    """
    logger.warning(
        "Request %s %s failed with %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc,
    )

    payload: Dict[str, Any] = {
        "error": exc.error_code,
        "detail": str(exc),
    }
    if isinstance(exc, GenerationProviderError):
        payload["kind"] = exc.kind

    status_code = exc.http_status
    if isinstance(exc, GenerationProviderError) and exc.kind == "rate_limit":
        status_code = 429

    return JSONResponse(status_code=status_code, content=payload)


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.
    - Ensures consistent error response format across the entire API.

    Parameters
    ----------
    request : Request
        The incoming HTTP request that triggered the exception.

    exc : Exception
        The uncaught exception instance.

    Returns
    -------
    JSONResponse
        A JSON 500 response with a minimal error payload.
    """

    # Log full traceback internally (never returned to client)
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    payload: Dict[str, Any] = {
        "error": "internal_server_error",
        "detail": "Internal server error",
    }

    return JSONResponse(
        status_code=500,
        content=payload,
    )
