# =============================================================================
# Token-Based Text Chunker — tiktoken
# =============================================================================
#
# Splits news articles into overlapping token windows. Each window is
# embedded independently, so its size must stay within embedding limits.
#
# DESIGN DECISION: Token-based windows (not character-based) because:
# 1. Window sizes line up with what the embedding model actually sees
# 2. tiktoken uses the same BPE tokenizer as OpenAI embedding models
# 3. Token counts are exact, so chunk sizes are reproducible
#
# ALGORITHM:
# 1. Encode the full text into tokens (cl100k_base)
# 2. If N <= W tokens, the text is its own single chunk (returned untouched)
# 3. Otherwise slide a window of W tokens at stride W - O
# 4. The final window is END-ANCHORED: it starts at N - W so it finishes on
#    the last token. A uniform stride would either pad the tail or leave a
#    tiny fragment; anchoring keeps every window full-size.
# 5. Each window's text is SLICED from the source at the character offsets of
#    its first and one-past-last token. Decoding a token slice can split a
#    multi-byte character at a window edge; slicing the original string
#    cannot, so the only duplication is the intended overlap.
#
# Chunk count for N > W: ceil((N - W) / (W - O)) + 1
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

import tiktoken

from finnews_rag.services.documents import Document

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """A single chunk of an article, ready for embedding and storage."""

    content: str  # Full window text (overlap included, not a diff)
    chunk_index: int  # 0-indexed, contiguous, left-to-right
    token_count: int


class TokenEncoder(Protocol):
    """The subset of `tiktoken.Encoding` the chunker relies on."""

    def encode_ordinary(self, text: str) -> list[int]: ...

    def decode_with_offsets(self, tokens: list[int]) -> tuple[str, list[int]]: ...


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------
# cl100k_base is the encoding of text-embedding-3-small. Loading it reads a
# ~1.7MB BPE file, so it is created once per process.
# ---------------------------------------------------------------------------

ENCODING_NAME = "cl100k_base"

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding(ENCODING_NAME)
    return _encoder


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def count_tokens(text: str, encoder: TokenEncoder | None = None) -> int:
    """Number of tokens in `text` under the chunking encoder."""
    encoder = encoder or _get_encoder()
    return len(encoder.encode_ordinary(text))


def iter_chunks(
    text: str,
    max_tokens: int = 500,
    overlap_tokens: int = 200,
    encoder: TokenEncoder | None = None,
) -> Iterator[str]:
    """
    Lazily yield overlapping token windows of `text`.

    Args:
        text: Text to split. Empty text yields a single empty chunk; callers
            persisting chunks should drop it.
        max_tokens: Window size W in tokens.
        overlap_tokens: Tokens O shared by consecutive windows (0 <= O < W).
        encoder: Tokenizer override (defaults to tiktoken cl100k_base).

    Yields:
        Chunk texts in left-to-right order.

    Raises:
        ValueError: If the window parameters are invalid.
        Tokenizer errors propagate unchanged.
    """
    if max_tokens <= 0:
        raise ValueError("max_tokens must be positive")
    if not 0 <= overlap_tokens < max_tokens:
        raise ValueError("overlap_tokens must satisfy 0 <= overlap < max_tokens")

    return _iter_windows(text, max_tokens, overlap_tokens, encoder or _get_encoder())


def chunk_document(
    document: Document,
    chunk_size: int = 500,
    chunk_overlap: int = 200,
    encoder: TokenEncoder | None = None,
) -> list[ChunkResult]:
    """
    Split an article's title + body into chunks with contiguous indices.

    Whitespace-only windows are dropped before numbering, since an empty
    chunk would produce a degenerate embedding.

    Pipeline position: Step 1 of ingestion (chunk → embed → store).
    """
    encoder = encoder or _get_encoder()

    chunks: list[ChunkResult] = []
    for window in iter_chunks(
        document.full_text, chunk_size, chunk_overlap, encoder=encoder,
    ):
        if not window.strip():
            continue
        chunks.append(ChunkResult(
            content=window,
            chunk_index=len(chunks),
            token_count=len(encoder.encode_ordinary(window)),
        ))

    logger.debug(
        "Chunked document %s into %d chunks (size=%d, overlap=%d)",
        document.id, len(chunks), chunk_size, chunk_overlap,
    )
    return chunks


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def window_starts(total_tokens: int, max_tokens: int, overlap_tokens: int) -> list[int]:
    """
    Start offsets of every window over `total_tokens` tokens.

    Assumes total_tokens > max_tokens. The last start is total - max so the
    final window ends exactly on the last token.
    """
    step = max_tokens - overlap_tokens
    starts: list[int] = []
    start = 0
    while start + max_tokens < total_tokens:
        starts.append(start)
        start += step
    starts.append(total_tokens - max_tokens)
    return starts


def _iter_windows(
    text: str,
    max_tokens: int,
    overlap_tokens: int,
    encoder: TokenEncoder,
) -> Iterator[str]:
    tokens = encoder.encode_ordinary(text)
    total = len(tokens)

    if total <= max_tokens:
        yield text
        return

    decoded, offsets = encoder.decode_with_offsets(tokens)
    # Sentinel: "one past the last token" maps to the end of the text
    offsets = [*offsets, len(decoded)]

    for start in window_starts(total, max_tokens, overlap_tokens):
        end = start + max_tokens
        yield decoded[offsets[start]:offsets[end]]
