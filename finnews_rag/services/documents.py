# =============================================================================
# News Documents — Ingestion Input Records
# =============================================================================
#
# A Document is one news article as it enters the ingestion pipeline.
# It is immutable: a corrected article is a new Document, never an edit of
# an existing one.
#
# Pipeline position: input to step 1 of ingestion (chunk → embed → store).
# =============================================================================

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime

from finnews_rag.db.models import NewsArticle

# Namespace for deterministic chunk ids. Changing it orphans every stored
# chunk, so treat it as part of the schema.
CHUNK_ID_NAMESPACE = uuid.UUID("6f1c2a52-4b0e-5d8e-9a57-0c7d2f3b8e41")


@dataclass(frozen=True)
class Document:
    """One news article: the unit of ingestion and of failure isolation."""

    id: str
    title: str
    body: str
    published_at: datetime | None = None
    url: str | None = None

    @property
    def full_text(self) -> str:
        """Title and body joined the way chunks are cut from them."""
        return f"{self.title}\n\n{self.body}"

    @classmethod
    def from_article(cls, article: NewsArticle) -> Document:
        """Build a Document from a stored `news_articles` row."""
        return cls(
            id=str(article.id),
            title=article.title,
            body=article.content,
            published_at=article.published_at,
            url=article.url,
        )


def make_chunk_id(document_id: str, chunk_index: int) -> str:
    """
    Deterministic chunk id derived from the owning document and position.

    Re-running ingestion for the same document yields the same ids, so an
    interrupted run can be resumed without duplicating chunks.
    """
    return str(uuid.uuid5(CHUNK_ID_NAMESPACE, f"{document_id}:{chunk_index}"))


def content_hash(text: str) -> str:
    """SHA-256 of the chunk text, used to skip re-embedding identical text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
