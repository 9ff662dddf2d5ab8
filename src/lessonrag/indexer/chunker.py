"""Split lesson text into bounded-size, order-preserving chunks.

Chunking is pure and deterministic: the same text and limits always give
the same boundaries and indices, which is what lets the indexer compare
per-chunk hashes across runs. Paragraphs (blank-line separated) are packed
together up to ``max_chars``; oversized paragraphs are split on sentence
boundaries, then on whitespace. A single word longer than ``max_chars`` is
emitted as its own chunk.
"""

import re
from typing import Optional

from .models import Chunk

DEFAULT_MAX_CHARS = 1200

_PARAGRAPH_SEPARATOR = "\n\n"
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def normalize_text(text: str) -> str:
    """Unify line endings, drop trailing whitespace per line, and trim."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in text.split("\n")).strip()


def _split_into_paragraphs(text: str) -> list[str]:
    """Split text on blank lines, keeping non-empty paragraphs in order."""
    paragraphs: list[str] = []
    current: list[str] = []

    for line in text.split("\n"):
        if line.strip() == "":
            if current:
                paragraphs.append("\n".join(current))
                current = []
        else:
            current.append(line)

    if current:
        paragraphs.append("\n".join(current))

    return paragraphs


def _pack(pieces: list[str], separator: str, max_chars: int) -> list[str]:
    """Greedily join pieces with separator without exceeding max_chars.

    A piece that is already longer than max_chars is emitted on its own.
    """
    packed: list[str] = []
    buffer = ""
    for piece in pieces:
        if not buffer:
            buffer = piece
        elif len(buffer) + len(separator) + len(piece) <= max_chars:
            buffer += separator + piece
        else:
            packed.append(buffer)
            buffer = piece
    if buffer:
        packed.append(buffer)
    return packed


def _split_oversized(paragraph: str, max_chars: int) -> list[str]:
    """Split a paragraph longer than max_chars by sentences, then by words."""
    pieces: list[str] = []
    for sentence in _SENTENCE_BOUNDARY.split(paragraph):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > max_chars:
            pieces.extend(_pack(sentence.split(), " ", max_chars))
        else:
            pieces.append(sentence)
    return _pack(pieces, " ", max_chars)


def _merge_paragraphs(paragraphs: list[str], min_chars: int, max_chars: int) -> list[str]:
    """Merge short paragraphs and split oversized ones into chunk texts."""
    chunks: list[str] = []
    buffer = ""

    def flush() -> None:
        nonlocal buffer
        if buffer.strip():
            chunks.append(buffer.strip())
        buffer = ""

    for para in paragraphs:
        if len(para) > max_chars:
            flush()
            chunks.extend(_split_oversized(para, max_chars))
            continue

        if buffer and len(buffer) + len(_PARAGRAPH_SEPARATOR) + len(para) > max_chars:
            flush()
        buffer += (_PARAGRAPH_SEPARATOR if buffer else "") + para
        # Closing a chunk once it is big enough keeps later boundaries stable
        # when an earlier paragraph is edited.
        if len(buffer) >= min_chars:
            flush()

    flush()
    return chunks


def chunk_text(
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    min_chars: Optional[int] = None,
) -> list[Chunk]:
    """Chunk text into contiguous, zero-indexed chunks.

    Args:
        text: Raw lesson text.
        max_chars: Upper bound on chunk length in characters.
        min_chars: Length at which a packed chunk is closed early.
            Defaults to half of ``max_chars``.

    Returns:
        Ordered list of chunks; empty for empty or whitespace-only input.

    Raises:
        ValueError: If ``max_chars`` is not positive.
    """
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got {max_chars}")
    if min_chars is None:
        min_chars = max(1, max_chars // 2)
    min_chars = min(min_chars, max_chars)

    normalized = normalize_text(text or "")
    if not normalized:
        return []

    merged = _merge_paragraphs(_split_into_paragraphs(normalized), min_chars, max_chars)
    return [Chunk(index=i, content=content) for i, content in enumerate(merged)]
