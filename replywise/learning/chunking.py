"""Split long email bodies into ordered chunks for independent extraction."""

import re

LONG_EMAIL_THRESHOLD = 4000
DEFAULT_CHUNK_SIZE = 2000
DEFAULT_MAX_CHUNKS = 5

_PARAGRAPH_RE = re.compile(r"\n\s*\n")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def is_long_email(text: str, threshold: int = LONG_EMAIL_THRESHOLD) -> bool:
    """True when ``text`` is long enough to be chunked."""
    return len(text) > threshold


def _hard_split(text: str, size: int) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def _pack(pieces: list[str], size: int, joiner: str) -> list[str]:
    """Greedily pack pieces into chunks no longer than ``size``."""
    chunks: list[str] = []
    current = ""
    for piece in pieces:
        candidate = f"{current}{joiner}{piece}" if current else piece
        if len(candidate) <= size:
            current = candidate
            continue
        if current:
            chunks.append(current)
        current = piece
    if current:
        chunks.append(current)
    return chunks


def _split_paragraph(paragraph: str, size: int) -> list[str]:
    sentences: list[str] = []
    for sentence in _SENTENCE_RE.split(paragraph):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) > size:
            sentences.extend(_hard_split(sentence, size))
        else:
            sentences.append(sentence)
    return _pack(sentences, size, " ")


def split_into_chunks(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> list[str]:
    """Split text at paragraph boundaries, falling back to sentences.

    Paragraphs are packed together up to ``chunk_size`` characters. A
    paragraph longer than ``chunk_size`` is split at sentence boundaries,
    and a single over-long sentence is cut at the size limit.

    Args:
        text: Email body.
        chunk_size: Maximum characters per chunk.
        max_chunks: Maximum number of chunks returned (leading chunks win).

    Returns:
        Ordered, non-empty chunks.
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    pieces: list[str] = []
    for paragraph in _PARAGRAPH_RE.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if len(paragraph) > chunk_size:
            pieces.extend(_split_paragraph(paragraph, chunk_size))
        else:
            pieces.append(paragraph)

    return _pack(pieces, chunk_size, "\n\n")[:max_chunks]
