"""Sentence-based text chunking with word overlap."""
from __future__ import annotations

import re
from typing import Iterator, List

# Chunks shorter than this (after trimming) are treated as noise.
MIN_CHUNK_CHARS = 10

# The overlap budget is given in characters and converted to a word count
# with this divisor (roughly ten characters per word).
OVERLAP_CHARS_PER_WORD = 10

_SENTENCE_BOUNDARY = re.compile(r"[.!?]+")


def _split_into_sentences(text: str) -> List[str]:
    """Split on sentence-terminal punctuation and drop empty fragments."""
    return [part.strip() for part in _SENTENCE_BOUNDARY.split(text) if part.strip()]


def _overlap_seed(buffer: str, chunk_overlap: int) -> str:
    """Return the trailing words of ``buffer`` that seed the next chunk."""
    word_count = chunk_overlap // OVERLAP_CHARS_PER_WORD
    if word_count <= 0:
        return ""
    words = buffer.split()
    return " ".join(words[-word_count:]) + " "


def iter_chunks(text: str, chunk_size: int = 512, chunk_overlap: int = 64) -> Iterator[str]:
    """Lazily split text into overlapping, sentence-aligned chunks.

    Sentences are accumulated greedily into a buffer. When the next sentence
    would push the buffer past ``chunk_size`` characters, the buffer is
    emitted and a new one is seeded with the last ``chunk_overlap // 10``
    words of the emitted chunk. The overlap is an approximation of the
    character budget, not an exact guarantee.

    The generator holds no state outside its own frame, so iterating it twice
    over the same input yields the same chunks.

    Args:
        text: Input text to chunk.
        chunk_size: Target maximum number of characters per chunk.
        chunk_overlap: Overlap budget in characters between consecutive chunks.

    Yields:
        Trimmed chunk strings of at least ``MIN_CHUNK_CHARS`` characters.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be greater than 0")
    if chunk_overlap < 0:
        raise ValueError("chunk_overlap must be non-negative")
    if chunk_overlap >= chunk_size:
        raise ValueError("chunk_overlap must be smaller than chunk_size")

    buffer = ""
    for sentence in _split_into_sentences(text):
        if buffer and len(buffer) + len(sentence) > chunk_size:
            emitted = buffer.strip()
            if len(emitted) >= MIN_CHUNK_CHARS:
                yield emitted
            buffer = _overlap_seed(buffer, chunk_overlap)
        buffer += sentence + ". "

    remaining = buffer.strip()
    if len(remaining) >= MIN_CHUNK_CHARS:
        yield remaining


def split_text(text: str, chunk_size: int = 512, chunk_overlap: int = 64) -> List[str]:
    """Materialize :func:`iter_chunks` into a list."""
    return list(iter_chunks(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap))
