"""
Deterministic note chunking.

Text is split into chunks of about CHUNK_SIZE characters with
CHUNK_OVERLAP characters shared between neighbours. Breaks only happen on
whitespace, so a word is never cut in half. The same input always yields
the same (text, checksum) sequence; staleness detection depends on it.
"""

import hashlib
from dataclasses import dataclass

from .model_client import DOCUMENT_PREFIX, apply_prefix

CHUNK_SIZE = 2000
OVERLAP_RATIO = 0.15
CHUNK_OVERLAP = int(CHUNK_SIZE * OVERLAP_RATIO)  # 300 chars


@dataclass(frozen=True)
class Chunk:
    """One embeddable slice of a note."""
    chunk_ix: int
    text: str
    checksum: str


def content_checksum(text: str, task_prefix: str = DOCUMENT_PREFIX) -> str:
    """sha256 hex of the prefixed text, exactly as it is sent to the model."""
    return hashlib.sha256(apply_prefix(text, task_prefix).encode("utf-8")).hexdigest()


def _break_before(text: str, start: int, end: int) -> int:
    """Index of the last whitespace in (start, end], or -1."""
    for i in range(end, start, -1):
        if text[i].isspace():
            return i
    return -1


def _break_after(text: str, pos: int) -> int:
    """Index of the first whitespace at or after pos, or len(text)."""
    n = len(text)
    while pos < n and not text[pos].isspace():
        pos += 1
    return pos


def _skip_space(text: str, pos: int) -> int:
    n = len(text)
    while pos < n and text[pos].isspace():
        pos += 1
    return pos


def split_text(
    text: str,
    size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[str]:
    """Split text into overlapping, whitespace-bounded pieces.

    Empty or whitespace-only input yields no pieces.
    """
    if overlap >= size:
        raise ValueError("overlap must be smaller than chunk size")
    text = text.strip()
    if not text:
        return []
    if len(text) <= size:
        return [text]

    n = len(text)
    pieces: list[str] = []
    start = 0
    while start < n:
        end = start + size
        if end >= n:
            pieces.append(text[start:].rstrip())
            break

        cut = _break_before(text, start, end)
        if cut < 0:
            # One very long token: extend to the next whitespace
            cut = _break_after(text, end)
        pieces.append(text[start:cut].rstrip())
        if cut >= n:
            break

        # Back up by the overlap, then forward to a word start
        nxt = cut - overlap
        if nxt <= start:
            nxt = cut
        else:
            while nxt < cut and not text[nxt - 1].isspace():
                nxt += 1
        start = _skip_space(text, nxt)

    return pieces


def chunk_note(text: str, task_prefix: str = DOCUMENT_PREFIX) -> list[Chunk]:
    """Chunk a note body. chunk_ix is dense from 0."""
    return [
        Chunk(chunk_ix=i, text=piece, checksum=content_checksum(piece, task_prefix))
        for i, piece in enumerate(split_text(text))
    ]
