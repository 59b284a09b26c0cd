"""
Luna - Chunker
===============
Greedy whitespace-token chunking.

Tokens are appended to the current chunk until its space-joined length
reaches ``target_size``; the chunk is then closed *after* that token, so
chunks end on token boundaries and may run slightly past the target.
Concatenating the chunks with single spaces reproduces the
whitespace-normalised input.
"""

from __future__ import annotations

from luna.src.core.models import Chunk, Document


def split_text(text: str, target_size: int) -> list[str]:
    """Split *text* into space-joined token runs of about *target_size* chars."""
    if target_size <= 0:
        raise ValueError(f"target_size must be > 0, got {target_size}")

    chunks: list[str] = []
    current: list[str] = []
    current_len = 0

    for token in text.split():
        # joined length grows by the token plus one separator (none for the first)
        current_len += len(token) + (1 if current else 0)
        current.append(token)
        if current_len >= target_size:
            chunks.append(" ".join(current))
            current = []
            current_len = 0

    if current:
        chunks.append(" ".join(current))
    return chunks


def chunk(text: str, target_size: int, source_id: str = "") -> list[Chunk]:
    """Chunk raw *text*; every returned ``Chunk`` carries *source_id*."""
    return [Chunk(text=piece, source_id=source_id) for piece in split_text(text, target_size)]


def chunk_document(document: Document, target_size: int) -> list[Chunk]:
    return chunk(document.text, target_size, source_id=document.source_id)
