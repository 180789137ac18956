"""
Streaming Generation Client

Issues a streaming chat completion to the configured provider and yields
text deltas as they arrive.

Stream handling
---------------
- Raw bytes are decoded incrementally and split on newlines.
- Only `data: ` lines are considered; a `[DONE]` payload ends the stream.
- Each payload is parsed as JSON and the provider extracts the delta.
- Malformed JSON lines are skipped up to a small budget, after which the
  stream is declared corrupt.

Retry policy
------------
Network-class failures while opening the stream are retried a bounded number
of times by re-issuing the request. HTTP error statuses are never retried;
they are mapped to GenerationProviderError with a kind that tells
authentication, permission, not-found and rate-limit failures apart.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..config import settings
from ..core.errors import GenerationProviderError
from ..providers.registry import Provider

logger = logging.getLogger("concierge.generation")

NETWORK_ERROR_PATTERNS = (
    "connection reset",
    "connection refused",
    "connection error",
    "network error",
    "timed out",
    "timeout",
    "temporarily unavailable",
)


def is_network_error(exc: BaseException) -> bool:
    """
    True for transport-level failures worth re-issuing the request for.
    """
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, GenerationProviderError):
        return exc.kind == "network"

    message = str(exc).lower()
    return any(pattern in message for pattern in NETWORK_ERROR_PATTERNS)


def iter_sse_data(buffer: str) -> tuple[List[str], str]:
    """
    Split `buffer` into complete lines and the trailing partial line.
    """
    *lines, rest = buffer.split("\n")
    return [line.rstrip("\r") for line in lines], rest


class GenerationClient:
    """
    Provider-agnostic streaming completion client.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_malformed_chunks: Optional[int] = None,
        max_network_retries: Optional[int] = None,
        retry_wait: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout or settings.generation_timeout
        self.max_malformed_chunks = (
            settings.stream_max_malformed_chunks
            if max_malformed_chunks is None else max_malformed_chunks
        )
        self.max_network_retries = (
            settings.stream_max_network_retries
            if max_network_retries is None else max_network_retries
        )
        self.retry_wait = retry_wait
        self._transport = transport

    async def stream(
        self,
        provider: Provider,
        model: str,
        messages: List[Dict[str, str]],
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """
        Yield text deltas from a streaming completion.

        Raises
        ------
        GenerationProviderError
            On HTTP error status, exhausted network retries, network failure
            mid-stream, or a corrupt or truncated stream.
        """
        url, headers, payload = provider.stream_request(
            model,
            messages,
            api_key,
            temperature=temperature,
            max_tokens=max_tokens,
        )

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            response = await self._open_stream(client, url, headers, payload, provider.name)
            try:
                async for delta in self._iter_deltas(response, provider):
                    yield delta
            except httpx.HTTPError as exc:
                raise GenerationProviderError(
                    f"Generation stream interrupted: {type(exc).__name__}",
                    kind="network",
                ) from exc
            finally:
                await response.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        provider_name: str,
    ) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_network_retries)),
            wait=wait_exponential(multiplier=self.retry_wait, max=10),
            retry=retry_if_exception(is_network_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            return await retrying(
                self._send, client, url, headers, payload, provider_name
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Generation request to %s failed after retries (%s)",
                provider_name,
                type(exc).__name__,
            )
            raise GenerationProviderError(
                f"Could not reach generation provider {provider_name}: {type(exc).__name__}",
                kind="network",
            ) from exc

    async def _send(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        provider_name: str,
    ) -> httpx.Response:
        request = client.build_request("POST", url, json=payload, headers=headers)
        response = await client.send(request, stream=True)

        if not response.is_success:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error(
                "Generation provider %s returned HTTP %d",
                provider_name,
                response.status_code,
            )
            raise GenerationProviderError.from_status(response.status_code, body)

        return response

    async def _iter_deltas(
        self,
        response: httpx.Response,
        provider: Provider,
    ) -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        malformed = 0

        async for raw in response.aiter_bytes():
            pending += decoder.decode(raw)
            lines, pending = iter_sse_data(pending)

            for line in lines:
                done, delta, malformed = self._handle_line(line, provider, malformed)
                if delta:
                    yield delta
                if done:
                    return

        # Flush a final line that had no trailing newline
        pending += decoder.decode(b"", final=True)
        if pending.strip():
            done, delta, malformed = self._handle_line(
                pending.rstrip("\r"), provider, malformed
            )
            if delta:
                yield delta
            if done:
                return

        logger.error("Generation stream from %s closed without an end marker", provider.name)
        raise GenerationProviderError(
            "Generation stream ended before completion",
            kind="stream",
        )

    def _handle_line(
        self,
        line: str,
        provider: Provider,
        malformed: int,
    ) -> tuple[bool, Optional[str], int]:
        """
        Interpret one stream line.

        Returns (stream_done, delta, updated_malformed_count).
        """
        if not line.startswith("data:"):
            return False, None, malformed

        data = line[5:].strip()
        if not data:
            return False, None, malformed
        if data == "[DONE]":
            return True, None, malformed

        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            malformed += 1
            logger.warning(
                "Skipping malformed stream chunk (%d/%d)",
                malformed,
                self.max_malformed_chunks,
            )
            if malformed > self.max_malformed_chunks:
                raise GenerationProviderError(
                    f"Generation stream corrupt: more than "
                    f"{self.max_malformed_chunks} malformed chunks",
                    kind="stream",
                )
            return False, None, malformed

        if not isinstance(payload, dict):
            return False, None, malformed

        if "error" in payload:
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise GenerationProviderError(
                f"Generation provider error: {message}",
                status_code=code if isinstance(code, int) else None,
            )

        return provider.is_end(payload), provider.extract_delta(payload), malformed
