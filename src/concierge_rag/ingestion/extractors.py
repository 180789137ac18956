"""
Text Extractors

Seam for turning uploaded file bytes into text. Real PDF/Office extraction is
provided by an external collaborator implementing `TextExtractor`; the
built-in extractor only handles plain-text formats.
"""

from __future__ import annotations

from typing import Protocol

from ..core.errors import UnsupportedContentError


TEXT_MIME_TYPES = frozenset({
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-ndjson",
})


def is_text_mime(mime_type: str) -> bool:
    mime = (mime_type or "").split(";")[0].strip().lower()
    return (
        mime.startswith("text/")
        or mime in TEXT_MIME_TYPES
        or mime.endswith("+json")
        or mime.endswith("+xml")
    )


class TextExtractor(Protocol):
    def extract(self, file_bytes: bytes, mime_type: str) -> str:
        ...


class PlainTextExtractor:
    """Decode text-like uploads as UTF-8."""

    def extract(self, file_bytes: bytes, mime_type: str) -> str:
        if not is_text_mime(mime_type):
            raise UnsupportedContentError(
                f"Cannot extract text from {mime_type or 'unknown'} content"
            )
        return file_bytes.decode("utf-8", errors="replace")
