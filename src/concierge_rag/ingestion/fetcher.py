"""
Content Fetcher

Resolves a knowledge source into raw text.

- URL sources are fetched with a single bounded-timeout GET. HTML is reduced
  to the readable text of its main content; other text types are returned
  as-is; binary types are rejected.
- File sources carry text already extracted by the upload path, so only
  non-emptiness is checked.

There are no retries here. Any failure is fatal to the ingestion attempt and
propagates to the orchestrator.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx
from bs4 import BeautifulSoup

from ..config import settings
from ..core.errors import FetchError, UnsupportedContentError
from .extractors import is_text_mime

logger = logging.getLogger("concierge.fetcher")

_USER_AGENT = "concierge-rag/1.0"
_STRIPPED_TAGS = ("script", "style", "nav", "footer", "header")
_CONTENT_TAGS = ("main", "article", "body")


class SourceLike(Protocol):
    type: str
    url: Optional[str]
    content: Optional[str]


def html_to_text(markup: str) -> str:
    """
    Extract readable text from an HTML document.

    Boilerplate elements are removed, then the text of the first of
    <main>, <article> or <body> found is returned, trimmed.
    """
    soup = BeautifulSoup(markup, "html.parser")

    for tag in soup(_STRIPPED_TAGS):
        tag.decompose()

    container = None
    for name in _CONTENT_TAGS:
        container = soup.find(name)
        if container is not None:
            break

    if container is None:
        container = soup

    return container.get_text(separator=" ", strip=True).strip()


class ContentFetcher:
    """
    Fetch source text for ingestion.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_bytes: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout or settings.fetch_timeout
        self.max_bytes = max_bytes or settings.max_fetch_bytes
        self._transport = transport

    async def fetch(self, source: SourceLike) -> str:
        """
        Return the raw text for a source.

        Raises
        ------
        FetchError
            Non-2xx status, timeout or transport failure.
        UnsupportedContentError
            Binary content, unknown source kind or empty file content.
        """
        if source.type == "url":
            if not source.url:
                raise FetchError("URL source has no URL", url="")
            return await self.fetch_url(source.url)

        if source.type == "file":
            text = (source.content or "").strip()
            if not text:
                raise UnsupportedContentError("File source has no extracted content")
            return text

        raise UnsupportedContentError(f"Unknown source type: {source.type!r}")

    async def fetch_url(self, url: str) -> str:
        logger.info("Fetching %s", url)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": _USER_AGENT},
            ) as client:
                async with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise FetchError(
                            f"Failed to fetch URL {url}: HTTP {response.status_code}",
                            url=url,
                            status_code=response.status_code,
                        )

                    content_type = response.headers.get("content-type", "")
                    mime = content_type.split(";")[0].strip().lower()
                    if mime and not is_text_mime(mime):
                        raise UnsupportedContentError(
                            f"Unsupported content type {mime} at {url}"
                        )

                    body = bytearray()
                    async for part in response.aiter_bytes():
                        body.extend(part)
                        if len(body) > self.max_bytes:
                            raise FetchError(
                                f"Response from {url} exceeds {self.max_bytes} bytes",
                                url=url,
                                status_code=response.status_code,
                            )

                    encoding = response.encoding or "utf-8"
        except httpx.HTTPError as exc:
            raise FetchError(
                f"Failed to fetch URL {url}: {type(exc).__name__}",
                url=url,
            ) from exc

        text = bytes(body).decode(encoding, errors="replace")

        if mime in ("text/html", "application/xhtml+xml"):
            return html_to_text(text)
        return text
