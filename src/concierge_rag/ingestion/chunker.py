"""
Semantic Chunker

Splits raw text into ordered, size-bounded chunks along sentence boundaries,
with a character overlap carried over from the previous chunk.

A sentence longer than `max_size` is emitted as a chunk of its own rather
than split mid-sentence.
"""

from __future__ import annotations

import re
from typing import List

from ..config import settings

# Sentence-terminal punctuation followed by whitespace
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> List[str]:
    """Split text into sentences, dropping empty fragments."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def chunk_text(
    text: str,
    max_size: int = settings.chunk_size,
    overlap: int = settings.chunk_overlap,
) -> List[str]:
    """
    Chunk `text` into pieces of at most `max_size` characters.

    Parameters
    ----------
    text : str
        Raw document text.
    max_size : int
        Maximum chunk length before overlap is added.
    overlap : int
        Number of trailing characters of the previous chunk prepended to
        each chunk after the first, joined by a space.

    Returns
    -------
    List[str]
        Chunks in reading order; empty for blank input.
    """
    if max_size < 1:
        raise ValueError("max_size must be >= 1")
    if overlap < 0:
        raise ValueError("overlap must be >= 0")

    chunks: List[str] = []
    buffer = ""

    for sentence in split_sentences(text):
        if not buffer:
            if len(sentence) > max_size:
                chunks.append(sentence)
            else:
                buffer = sentence
            continue

        if len(buffer) + 1 + len(sentence) > max_size:
            chunks.append(buffer)
            if len(sentence) > max_size:
                chunks.append(sentence)
                buffer = ""
            else:
                buffer = sentence
        else:
            buffer = f"{buffer} {sentence}"

    if buffer:
        chunks.append(buffer)

    if len(chunks) < 2 or overlap == 0:
        return chunks

    overlapped = [chunks[0]]
    for previous, current in zip(chunks, chunks[1:]):
        overlapped.append(f"{previous[-overlap:]} {current}")
    return overlapped
