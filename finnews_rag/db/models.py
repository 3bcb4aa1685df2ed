# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────┐       ┌──────────────────────────────────────┐
# │  news_articles   │       │  news_chunks                         │
# ├──────────────────┤       ├──────────────────────────────────────┤
# │ id (PK, uuid)    │──1:N─▶│ id (PK, uuid5(news_id:chunk_index))  │
# │ title            │       │ news_id (FK → news_articles.id)      │
# │ content          │       │ chunk_index (int)                    │
# │ url              │       │ title (denormalised)                 │
# │ published_at     │       │ chunk_text (text)                    │
# │ created_at       │       │ content_hash (sha256 of chunk_text)  │
# └──────────────────┘       │ token_count (int)                    │
#                            │ embedding (vector(D))                │
#                            │ embedding_model (str)                │
#                            │ published_at (denormalised)          │
#                            │ created_at                           │
#                            └──────────────────────────────────────┘
#
# DESIGN DECISIONS:
#
# 1. Title and published_at are copied onto every chunk so search can filter
#    by date and display results without joining back to the article.
#
# 2. embedding_model is stored per row. Similarity scores are only comparable
#    within one embedding space, so search restricts itself to rows produced
#    by the active model.
#
# 3. content_hash lets ingestion reuse a stored vector for identical text
#    instead of paying for a second embedding call.
#
# 4. Chunk ids are deterministic (see services/documents.make_chunk_id), so
#    re-running ingestion overwrites rows instead of duplicating them.
# =============================================================================

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from finnews_rag.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class NewsArticle(Base):
    """
    A scraped news article (the Document of the retrieval core).

    Rows are written by the scraping jobs, which live outside this package.
    Articles are never edited in place; a correction is a new row.
    """

    __tablename__ = "news_articles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Link to the original article, when the scraper captured one
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    # Deleting an article removes its chunks (full reprocessing)
    chunks: Mapped[list["NewsChunk"]] = relationship(
        "NewsChunk",
        back_populates="article",
        cascade="all, delete-orphan",
        lazy="noload",
    )

    def __repr__(self) -> str:
        return f"<NewsArticle(id={self.id}, title='{self.title[:30]}')>"


class NewsChunk(Base):
    """
    A token window of an article plus its embedding.

    1. During ingestion: articles are chunked, each chunk is embedded
    2. During retrieval: query variants are embedded and compared against
       chunk embeddings using cosine distance in pgvector
    """

    __tablename__ = "news_chunks"
    __table_args__ = (
        UniqueConstraint("news_id", "chunk_index", name="uq_news_chunk_position"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)

    news_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("news_articles.id", ondelete="CASCADE"),
        nullable=False,
    )

    # 0-indexed, contiguous per article, left-to-right in the source text
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    chunk_text: Mapped[str] = mapped_column(Text, nullable=False)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ---------------------------------------------------------------------------
    # Vector Embedding
    # ---------------------------------------------------------------------------
    # Stored as a PostgreSQL `vector(D)` column. Inserting a vector of a
    # different length fails at the database, which is what we want.
    # ---------------------------------------------------------------------------
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )
    embedding_model: Mapped[str] = mapped_column(String(200), nullable=False)

    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    article: Mapped["NewsArticle"] = relationship(
        "NewsArticle", back_populates="chunks",
    )

    def __repr__(self) -> str:
        return (
            f"<NewsChunk(id={self.id}, news_id={self.news_id}, "
            f"index={self.chunk_index}, tokens={self.token_count})>"
        )


# =============================================================================
# Database Indexes
# =============================================================================
#
# HNSW index on chunk embeddings with `vector_cosine_ops`: approximate nearest
# neighbour search that keeps `ORDER BY embedding <=> :q LIMIT :k` fast at
# corpus scale (tens of thousands to millions of chunks). Exact scans are fine
# for small corpora; the planner falls back to them automatically.
# =============================================================================

chunk_embedding_idx = Index(
    "idx_news_chunk_embedding_hnsw",
    NewsChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

# Re-embedding avoidance looks chunks up by (content_hash, embedding_model)
chunk_content_hash_idx = Index(
    "idx_news_chunk_content_hash",
    NewsChunk.content_hash,
    NewsChunk.embedding_model,
)

# Date-filtered retrieval ("published before X")
chunk_published_idx = Index(
    "idx_news_chunk_published_at",
    NewsChunk.published_at,
)

article_published_idx = Index(
    "idx_news_article_published_at",
    NewsArticle.published_at,
)
