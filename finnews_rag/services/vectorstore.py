# =============================================================================
# Vector Store Abstraction — Pluggable Backend Protocol
# =============================================================================
#
# Persists news chunks with their embeddings and answers thresholded cosine
# similarity queries over them.
#
# DESIGN DECISION: Protocol (structural typing) over ABC (nominal typing).
# Any class with the right methods can be used, so tests plug in small fakes
# without inheriting from anything.
#
# DESIGN DECISION: The threshold is a HARD pre-filter, not a re-ranking
# signal. It directly bounds how much context reaches the (cost-bounded)
# language model downstream. Date filters are applied before ranking, so
# `limit` only ever counts rows that match.
#
# DESIGN DECISION: Mixed sync/async interface.
# - upsert() and the lookup helpers are sync → called by Celery workers
# - search() is async → awaited concurrently by the retrieval orchestrator
#
# Every read is scoped to the store's `embedding_model`: scores from two
# embedding spaces are never ranked together.
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   ├── PgVectorStore     — PostgreSQL + pgvector (HNSW, vector_cosine_ops)
#   │   ├── upsert()      — INSERT … ON CONFLICT (id) DO UPDATE, sync
#   │   └── search()      — WHERE 1 - (embedding <=> q) > threshold
#   │                       ORDER BY embedding <=> q LIMIT k, async
#   └── ChromaVectorStore — ChromaDB (in-process or client/server)
#       ├── upsert()      — collection.upsert(), sync
#       └── search()      — async via asyncio.to_thread() wrapper
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import Callable, Generator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import chromadb
import httpx
from sqlalchemy import delete, distinct, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DataError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session

from finnews_rag.config import settings
from finnews_rag.db.engine import get_async_session_factory, get_sync_session_factory
from finnews_rag.db.models import NewsArticle, NewsChunk
from finnews_rag.services.errors import (
    EmbeddingDimensionMismatchError,
    VectorStoreUnavailableError,
)
from finnews_rag.services.retry import RetryPolicy, default_retry_policy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkRecord:
    """A chunk row as written by ingestion (embedding included)."""

    id: str
    document_id: str
    chunk_index: int
    title: str
    content: str
    content_hash: str
    embedding: list[float]
    embedding_model: str
    published_at: datetime | None = None
    token_count: int = 0


@dataclass
class SearchFilter:
    """
    Row filter applied before ranking.

    published_before is exclusive, published_after inclusive. Rows without a
    publication timestamp never match a date bound.
    """

    published_before: datetime | None = None
    published_after: datetime | None = None

    def is_empty(self) -> bool:
        return self.published_before is None and self.published_after is None

    def matches(self, published_at: datetime | None) -> bool:
        if self.is_empty():
            return True
        if published_at is None:
            return False
        if self.published_before is not None and not published_at < self.published_before:
            return False
        if self.published_after is not None and not published_at >= self.published_after:
            return False
        return True


@dataclass
class VectorSearchResult:
    """A single row returned by similarity search."""

    chunk_id: str
    document_id: str
    chunk_index: int
    title: str
    content: str
    published_at: datetime | None
    similarity_score: float  # cosine similarity, [-1, 1], higher = closer


@dataclass
class StoreStats:
    """Corpus coverage report for the active embedding model."""

    chunk_count: int
    chunked_document_count: int
    document_count: int | None = None  # None when the backend can't tell

    @property
    def avg_chunks_per_document(self) -> float:
        if not self.chunked_document_count:
            return 0.0
        return self.chunk_count / self.chunked_document_count


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """
    Protocol defining the vector store interface.

    Both pgvector and ChromaDB implementations provide these members.
    """

    dimensions: int
    embedding_model: str

    def upsert(self, chunks: Sequence[ChunkRecord]) -> list[str]:
        """
        Write or overwrite chunks by id (last write wins). Sync.

        Each row is atomic. A failed call may be repeated as-is: ids are
        deterministic, so re-writing rows that did land is harmless.

        Returns:
            Ids of the written chunks.
        """
        ...

    async def search(
        self,
        query_embedding: list[float],
        threshold: float | None = None,
        limit: int = 5,
        search_filter: SearchFilter | None = None,
    ) -> list[VectorSearchResult]:
        """
        Chunks with similarity strictly above `threshold`, best first.

        Args:
            query_embedding: Query vector (store dimensionality).
            threshold: Cosine similarity cutoff; None means no cutoff.
            limit: Maximum number of results.
            search_filter: Optional date bounds, applied before ranking.

        Returns:
            Up to `limit` results sorted by similarity (highest first).
            Fewer (possibly zero) results is not an error.
        """
        ...

    def find_embeddings(self, content_hashes: Sequence[str]) -> dict[str, list[float]]:
        """Stored vectors (active model) for any of the given text hashes."""
        ...

    def get_chunk_hashes(self, document_id: str) -> dict[str, str]:
        """chunk_id → content_hash for a document's stored chunks."""
        ...

    def delete_document(self, document_id: str) -> int:
        """Remove every chunk of a document. Returns the count removed."""
        ...

    def get_stats(self) -> StoreStats:
        ...


def check_dimensions(expected: int, vector: Sequence[float]) -> None:
    """Raise EmbeddingDimensionMismatchError unless len(vector) == expected."""
    if len(vector) != expected:
        raise EmbeddingDimensionMismatchError(expected=expected, actual=len(vector))


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed vector store using PostgreSQL.

    Uses a sync session factory for writes/lookups (Celery) and an async
    session factory for search. Both default to the lazily created engines
    in db/engine.py; pass your own to control connection lifecycle.

    Connection failures surface as VectorStoreUnavailableError and are
    retried by the shared RetryPolicy.
    """

    def __init__(
        self,
        dimensions: int = 1536,
        embedding_model: str = "text-embedding-3-small",
        session_factory: Callable[[], Session] | None = None,
        async_session_factory: async_sessionmaker[AsyncSession] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.dimensions = dimensions
        self.embedding_model = embedding_model
        self._session_factory = session_factory
        self._async_session_factory = async_session_factory
        self._retry = retry_policy or default_retry_policy()

    # -- writes -------------------------------------------------------------

    def upsert(self, chunks: Sequence[ChunkRecord]) -> list[str]:
        """Insert chunks, overwriting rows that already have the same id."""
        if not chunks:
            return []
        for chunk in chunks:
            check_dimensions(self.dimensions, chunk.embedding)

        rows = [
            {
                "id": uuid.UUID(c.id),
                "news_id": uuid.UUID(c.document_id),
                "chunk_index": c.chunk_index,
                "title": c.title,
                "chunk_text": c.content,
                "content_hash": c.content_hash,
                "token_count": c.token_count,
                "embedding": c.embedding,
                "embedding_model": c.embedding_model,
                "published_at": c.published_at,
            }
            for c in chunks
        ]
        self._retry.call(self._upsert_rows, rows)

        logger.info("Upserted %d chunks into pgvector", len(rows))
        return [c.id for c in chunks]

    def _upsert_rows(self, rows: list[dict]) -> None:
        stmt = pg_insert(NewsChunk).values(rows)
        updatable = [
            "news_id", "chunk_index", "title", "chunk_text", "content_hash",
            "token_count", "embedding", "embedding_model", "published_at",
        ]
        stmt = stmt.on_conflict_do_update(
            index_elements=[NewsChunk.id],
            set_={name: stmt.excluded[name] for name in updatable},
        )
        with self._session() as session:
            session.execute(stmt)

    def delete_document(self, document_id: str) -> int:
        def _delete() -> int:
            with self._session() as session:
                result = session.execute(
                    delete(NewsChunk).where(NewsChunk.news_id == uuid.UUID(document_id))
                )
                return result.rowcount or 0

        removed = self._retry.call(_delete)
        logger.info("Deleted %d chunks of document %s", removed, document_id)
        return removed

    # -- reads --------------------------------------------------------------

    async def search(
        self,
        query_embedding: list[float],
        threshold: float | None = None,
        limit: int = 5,
        search_filter: SearchFilter | None = None,
    ) -> list[VectorSearchResult]:
        """
        Cosine similarity search using pgvector.

        pgvector's cosine distance is in [0, 2]; similarity = 1 - distance.
        The threshold is expressed in the WHERE clause so that the index scan
        and LIMIT only ever see qualifying rows.
        """
        check_dimensions(self.dimensions, query_embedding)
        return await self._retry.acall(
            self._search_once, query_embedding, threshold, limit, search_filter,
        )

    async def _search_once(
        self,
        query_embedding: list[float],
        threshold: float | None,
        limit: int,
        search_filter: SearchFilter | None,
    ) -> list[VectorSearchResult]:
        distance = NewsChunk.embedding.cosine_distance(query_embedding)
        stmt = (
            select(
                NewsChunk.id,
                NewsChunk.news_id,
                NewsChunk.chunk_index,
                NewsChunk.title,
                NewsChunk.chunk_text,
                NewsChunk.published_at,
                distance.label("distance"),
            )
            .where(NewsChunk.embedding_model == self.embedding_model)
        )
        if threshold is not None:
            stmt = stmt.where(1 - distance > threshold)
        if search_filter is not None:
            if search_filter.published_before is not None:
                stmt = stmt.where(NewsChunk.published_at < search_filter.published_before)
            if search_filter.published_after is not None:
                stmt = stmt.where(NewsChunk.published_at >= search_filter.published_after)
        stmt = stmt.order_by(distance).limit(limit)

        factory = self._async_session_factory or get_async_session_factory()
        with translate_db_errors(self.dimensions):
            async with factory() as session:
                rows = (await session.execute(stmt)).all()

        logger.debug(
            "pgvector search returned %d rows (limit=%d, threshold=%s)",
            len(rows), limit, threshold,
        )
        return [
            VectorSearchResult(
                chunk_id=str(row.id),
                document_id=str(row.news_id),
                chunk_index=row.chunk_index,
                title=row.title,
                content=row.chunk_text,
                published_at=row.published_at,
                similarity_score=1.0 - float(row.distance),
            )
            for row in rows
        ]

    def find_embeddings(self, content_hashes: Sequence[str]) -> dict[str, list[float]]:
        if not content_hashes:
            return {}

        def _find() -> dict[str, list[float]]:
            stmt = (
                select(NewsChunk.content_hash, NewsChunk.embedding)
                .where(NewsChunk.content_hash.in_(list(set(content_hashes))))
                .where(NewsChunk.embedding_model == self.embedding_model)
            )
            with self._session() as session:
                return {
                    row.content_hash: [float(x) for x in row.embedding]
                    for row in session.execute(stmt)
                }

        return self._retry.call(_find)

    def get_chunk_hashes(self, document_id: str) -> dict[str, str]:
        def _hashes() -> dict[str, str]:
            stmt = (
                select(NewsChunk.id, NewsChunk.content_hash)
                .where(NewsChunk.news_id == uuid.UUID(document_id))
                .where(NewsChunk.embedding_model == self.embedding_model)
            )
            with self._session() as session:
                return {str(row.id): row.content_hash for row in session.execute(stmt)}

        return self._retry.call(_hashes)

    def get_stats(self) -> StoreStats:
        def _stats() -> StoreStats:
            model_filter = NewsChunk.embedding_model == self.embedding_model
            with self._session() as session:
                return StoreStats(
                    chunk_count=session.scalar(
                        select(func.count()).select_from(NewsChunk).where(model_filter)
                    ) or 0,
                    chunked_document_count=session.scalar(
                        select(func.count(distinct(NewsChunk.news_id))).where(model_filter)
                    ) or 0,
                    document_count=session.scalar(
                        select(func.count()).select_from(NewsArticle)
                    ) or 0,
                )

        return self._retry.call(_stats)

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        """Sync session: commit on success, rollback on error, always close."""
        factory = self._session_factory or get_sync_session_factory()
        with translate_db_errors(self.dimensions):
            session = factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()


# pgvector reports a stored/query length conflict in one of these forms
_DIMENSION_MESSAGES = (
    re.compile(r"different vector dimensions (\d+) and (\d+)"),
    re.compile(r"expected (\d+) dimensions, not (\d+)"),
)


@contextmanager
def translate_db_errors(dimensions: int = 0) -> Generator[None, None, None]:
    """
    Map database errors onto the retrieval error hierarchy.

    Dropped/unavailable connections become VectorStoreUnavailableError
    (retryable). pgvector rejecting a vector of the wrong length becomes
    EmbeddingDimensionMismatchError: the `embedding` column was created for a
    different model than the one configured, and no retry will fix that.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        raise VectorStoreUnavailableError(f"Vector store unavailable: {e}") from e
    except DataError as e:
        mismatch = _dimension_mismatch(str(e.orig or e), dimensions)
        if mismatch is None:
            raise
        raise mismatch from e


def _dimension_mismatch(message: str, dimensions: int) -> EmbeddingDimensionMismatchError | None:
    if "dimensions" not in message:
        return None
    for pattern in _DIMENSION_MESSAGES:
        match = pattern.search(message)
        if match:
            return EmbeddingDimensionMismatchError(
                expected=int(match.group(1)), actual=int(match.group(2)),
            )
    return EmbeddingDimensionMismatchError(expected=0, actual=dimensions)


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed vector store.

    DESIGN DECISION: One collection, cosine space, to match pgvector scores.
    Chroma has no native similarity cutoff, so search asks for the top
    `limit` hits and drops those at or below the threshold. That is the same
    set pgvector returns: every row above the threshold that ranks in the top
    `limit`.

    Metadata filters (model, document, date) use Chroma's `where` clause so
    they apply before ranking. Publication time is stored as a POSIX
    timestamp because `where` only compares numbers.
    """

    def __init__(
        self,
        dimensions: int = 1536,
        embedding_model: str = "text-embedding-3-small",
        collection_name: str = "finnews_chunks",
        client: chromadb.ClientAPI | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.dimensions = dimensions
        self.embedding_model = embedding_model
        if client is None:
            if settings.chroma_url:
                client = chromadb.HttpClient(host=settings.chroma_url)
            else:
                client = chromadb.Client()
        self._client = client
        self._collection = self._client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        self._retry = retry_policy or default_retry_policy()

    # -- writes -------------------------------------------------------------

    def upsert(self, chunks: Sequence[ChunkRecord]) -> list[str]:
        if not chunks:
            return []
        for chunk in chunks:
            check_dimensions(self.dimensions, chunk.embedding)

        self._retry.call(
            self._call,
            self._collection.upsert,
            ids=[c.id for c in chunks],
            documents=[c.content for c in chunks],
            embeddings=[list(c.embedding) for c in chunks],
            metadatas=[_chunk_metadata(c) for c in chunks],
        )
        logger.info("Upserted %d chunks into ChromaDB", len(chunks))
        return [c.id for c in chunks]

    def delete_document(self, document_id: str) -> int:
        existing = self._retry.call(
            self._call,
            self._collection.get,
            where={"document_id": document_id},
            include=["metadatas"],
        )
        ids = existing["ids"]
        if ids:
            self._retry.call(self._call, self._collection.delete, ids=ids)
        logger.info("Deleted %d chunks of document %s", len(ids), document_id)
        return len(ids)

    # -- reads --------------------------------------------------------------

    async def search(
        self,
        query_embedding: list[float],
        threshold: float | None = None,
        limit: int = 5,
        search_filter: SearchFilter | None = None,
    ) -> list[VectorSearchResult]:
        """
        Similarity search in ChromaDB.

        ChromaDB's Python client is synchronous, so the query runs in a
        worker thread to keep the event loop free for other variants.
        """
        check_dimensions(self.dimensions, query_embedding)

        def _sync_search() -> list[VectorSearchResult]:
            results = self._call(
                self._collection.query,
                query_embeddings=[list(query_embedding)],
                n_results=limit,
                where=self._where(search_filter),
                include=["documents", "metadatas", "distances"],
            )

            hits: list[VectorSearchResult] = []
            if not results["ids"] or not results["ids"][0]:
                return hits
            for i, chunk_id in enumerate(results["ids"][0]):
                # Chroma cosine distance is in [0, 2]; convert to similarity
                similarity = 1.0 - float(results["distances"][0][i])
                if threshold is not None and not similarity > threshold:
                    continue
                meta = results["metadatas"][0][i] or {}
                hits.append(VectorSearchResult(
                    chunk_id=chunk_id,
                    document_id=str(meta.get("document_id", "")),
                    chunk_index=int(meta.get("chunk_index", 0)),
                    title=str(meta.get("title", "")),
                    content=results["documents"][0][i] or "",
                    published_at=_from_timestamp(meta.get("published_ts")),
                    similarity_score=similarity,
                ))
            return hits

        return await asyncio.to_thread(self._retry.call, _sync_search)

    def find_embeddings(self, content_hashes: Sequence[str]) -> dict[str, list[float]]:
        if not content_hashes:
            return {}
        found = self._retry.call(
            self._call,
            self._collection.get,
            where={"$and": [
                {"content_hash": {"$in": list(set(content_hashes))}},
                {"embedding_model": self.embedding_model},
            ]},
            include=["embeddings", "metadatas"],
        )
        embeddings = found["embeddings"]
        if embeddings is None:
            return {}
        return {
            meta["content_hash"]: [float(x) for x in vector]
            for meta, vector in zip(found["metadatas"], embeddings, strict=True)
        }

    def get_chunk_hashes(self, document_id: str) -> dict[str, str]:
        found = self._retry.call(
            self._call,
            self._collection.get,
            where={"$and": [
                {"document_id": document_id},
                {"embedding_model": self.embedding_model},
            ]},
            include=["metadatas"],
        )
        return {
            chunk_id: meta["content_hash"]
            for chunk_id, meta in zip(found["ids"], found["metadatas"], strict=True)
        }

    def get_stats(self) -> StoreStats:
        found = self._retry.call(
            self._call,
            self._collection.get,
            where={"embedding_model": self.embedding_model},
            include=["metadatas"],
        )
        document_ids = {meta["document_id"] for meta in found["metadatas"]}
        return StoreStats(
            chunk_count=len(found["ids"]),
            chunked_document_count=len(document_ids),
        )

    # -- helpers ------------------------------------------------------------

    def _where(self, search_filter: SearchFilter | None) -> dict:
        conditions: list[dict] = [{"embedding_model": self.embedding_model}]
        if search_filter is not None:
            if search_filter.published_before is not None:
                conditions.append({"published_ts": {"$lt": _to_timestamp(search_filter.published_before)}})
            if search_filter.published_after is not None:
                conditions.append({"published_ts": {"$gte": _to_timestamp(search_filter.published_after)}})
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    @staticmethod
    def _call(method: Callable, **kwargs):
        """Invoke a Chroma client method, mapping transport failures."""
        try:
            return method(**kwargs)
        except (ConnectionError, httpx.TransportError) as e:
            raise VectorStoreUnavailableError(f"ChromaDB unavailable: {e}") from e


def _chunk_metadata(chunk: ChunkRecord) -> dict:
    # Chroma rejects None metadata values
    metadata = {
        "document_id": chunk.document_id,
        "chunk_index": chunk.chunk_index,
        "title": chunk.title,
        "content_hash": chunk.content_hash,
        "embedding_model": chunk.embedding_model,
        "token_count": chunk.token_count,
    }
    if chunk.published_at is not None:
        metadata["published_ts"] = _to_timestamp(chunk.published_at)
    return metadata


def _to_timestamp(value: datetime) -> float:
    # Naive datetimes are taken as UTC so stored and filter values agree
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.timestamp()


def _from_timestamp(value: float | int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=UTC)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_vector_store(
    override_type: str | None = None,
) -> PgVectorStore | ChromaVectorStore:
    """
    Factory that returns the configured vector store backend.

    Reads `vectorstore_type` from settings:
    - "pgvector" → PgVectorStore (default)
    - "chroma" → ChromaVectorStore

    Args:
        override_type: Optional type override, ignoring the config setting.
    """
    store_type = override_type or settings.vectorstore_type

    if store_type == "chroma":
        logger.info("Using ChromaDB vector store")
        return ChromaVectorStore(
            dimensions=settings.embedding_dimensions,
            embedding_model=settings.embedding_model,
            collection_name=settings.chroma_collection,
        )

    if store_type != "pgvector":
        raise ValueError(f"Unknown vectorstore_type: {store_type!r}")

    logger.info("Using pgvector vector store")
    return PgVectorStore(
        dimensions=settings.embedding_dimensions,
        embedding_model=settings.embedding_model,
    )
