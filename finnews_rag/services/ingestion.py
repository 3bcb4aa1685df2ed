# =============================================================================
# Ingestion Pipeline — Chunk → Embed → Store
# =============================================================================
#
# Turns news articles into searchable chunks:
#
#   Document ──chunk──▶ windows ──hash──▶ skip / reuse / embed ──▶ upsert
#
# PER DOCUMENT:
# 1. Chunk title + body into overlapping token windows (chunker.py);
#    whitespace-only windows are dropped.
# 2. Each chunk gets a deterministic id (document id + index) and a content
#    hash (SHA-256 of its text).
# 3. A chunk already stored under the same id with the same hash is skipped
#    entirely: no embedding call, no write.
# 4. A chunk whose text was already embedded by the active model (same hash,
#    any document) reuses that vector instead of calling the API again.
# 5. The rest are embedded in groups of `flush_size`. If a group's batch call
#    fails, its chunks are retried one by one so a single bad chunk is
#    skipped instead of the whole group.
# 6. Every group is upserted as soon as its embeddings exist, so an
#    interrupted run loses at most one group of work and resumes at step 3.
#
# DESIGN DECISION: Idempotent by construction.
# Deterministic ids + last-write-wins upserts mean ingesting a document twice
# produces the same rows, and the second run makes no embedding calls at all.
#
# `reprocess=True` deletes the document's chunks first (full rebuild, e.g.
# after changing chunk size or embedding model).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from finnews_rag.config import settings
from finnews_rag.services.chunker import ChunkResult, TokenEncoder, chunk_document
from finnews_rag.services.documents import Document, content_hash, make_chunk_id
from finnews_rag.services.embedder import EmbeddingClient
from finnews_rag.services.errors import FinNewsRAGError, TransientError
from finnews_rag.services.vectorstore import ChunkRecord, VectorStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionSummary:
    """What happened to one document's chunks."""

    document_id: str
    chunk_count: int = 0  # windows produced by the chunker
    skipped_unchanged: int = 0  # already stored with identical text
    reused_embeddings: int = 0  # vector copied from identical stored text
    embedded: int = 0  # chunks sent to the embedding API
    failed_chunks: int = 0  # embedding failed; chunk not stored
    upserted: int = 0
    deleted: int = 0  # removed first by reprocess=True
    chunk_ids: list[str] = field(default_factory=list)  # stored after this run
    error: str | None = None  # set when the whole document failed
    retryable: bool = False  # failure was transient; a later run may succeed

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class _PendingChunk:
    chunk: ChunkResult
    chunk_id: str
    content_hash: str


class IngestionPipeline:
    """
    Chunks, embeds and stores news documents.

    Usage:
        pipeline = IngestionPipeline(get_embedding_client(), get_vector_store())
        summary = pipeline.ingest(document)
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        store: VectorStore,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
        flush_size: int | None = None,
        encoder: TokenEncoder | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
        self._chunk_overlap = (
            chunk_overlap if chunk_overlap is not None else settings.chunk_overlap
        )
        self._flush_size = flush_size if flush_size is not None else settings.ingestion_flush_size
        self._encoder = encoder

        if self._flush_size < 1:
            raise ValueError("flush_size must be >= 1")

    def ingest(self, document: Document, reprocess: bool = False) -> IngestionSummary:
        """
        Ingest one document.

        Raises:
            ValueError: Invalid chunking parameters.
            VectorStoreUnavailableError: Store still down after retries.
            EmbeddingDimensionMismatchError: Embedder and store disagree on
                vector size.
            Tokenizer errors propagate unchanged.
        """
        summary = IngestionSummary(document_id=document.id)

        if reprocess:
            summary.deleted = self._store.delete_document(document.id)

        chunks = chunk_document(
            document, self._chunk_size, self._chunk_overlap, encoder=self._encoder,
        )
        summary.chunk_count = len(chunks)
        if not chunks:
            logger.warning("Document %s produced no chunks", document.id)
            return summary

        # Step 3: skip what is already stored unchanged
        stored = {} if reprocess else self._store.get_chunk_hashes(document.id)
        pending: list[_PendingChunk] = []
        for chunk in chunks:
            chunk_id = make_chunk_id(document.id, chunk.chunk_index)
            digest = content_hash(chunk.content)
            if stored.get(chunk_id) == digest:
                summary.skipped_unchanged += 1
                summary.chunk_ids.append(chunk_id)
                continue
            pending.append(_PendingChunk(chunk, chunk_id, digest))

        # Step 4: reuse vectors for text that was embedded before
        known = self._store.find_embeddings([p.content_hash for p in pending]) if pending else {}

        for start in range(0, len(pending), self._flush_size):
            group = pending[start : start + self._flush_size]
            records = self._embed_group(document, group, known, summary)
            if records:
                self._store.upsert(records)
                summary.upserted += len(records)
                summary.chunk_ids.extend(r.id for r in records)

        logger.info(
            "Ingested document %s: %d chunks (%d unchanged, %d reused, "
            "%d embedded, %d failed)",
            document.id, summary.chunk_count, summary.skipped_unchanged,
            summary.reused_embeddings, summary.embedded, summary.failed_chunks,
        )
        return summary

    def ingest_many(
        self,
        documents: Iterable[Document],
        reprocess: bool = False,
    ) -> list[IngestionSummary]:
        """
        Ingest documents one after another, isolating failures.

        A document that fails (tokenizer error, store outage after retries)
        gets a summary with `error` set, and `retryable` when the cause was
        transient; the remaining documents still run.
        """
        summaries = []
        for document in documents:
            try:
                summaries.append(self.ingest(document, reprocess=reprocess))
            except Exception as e:
                logger.exception("Ingestion failed for document %s", document.id)
                summaries.append(IngestionSummary(
                    document_id=document.id,
                    error=str(e),
                    retryable=isinstance(e, TransientError),
                ))
        return summaries

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _embed_group(
        self,
        document: Document,
        group: Sequence[_PendingChunk],
        known: dict[str, list[float]],
        summary: IngestionSummary,
    ) -> list[ChunkRecord]:
        """Attach a vector to every chunk in the group that can get one."""
        # One API input per distinct text not embedded before
        to_embed: dict[str, str] = {}
        for p in group:
            if p.content_hash not in known:
                to_embed.setdefault(p.content_hash, p.chunk.content)
        vectors = self._embed_texts(list(to_embed.values()))
        fresh = dict(zip(to_embed, vectors, strict=True))

        records = []
        for p in group:
            vector = known.get(p.content_hash)
            if vector is not None:
                summary.reused_embeddings += 1
            else:
                vector = fresh[p.content_hash]
                if vector is None:
                    summary.failed_chunks += 1
                    continue
                summary.embedded += 1
                # Identical text later in the same document reuses this vector
                known[p.content_hash] = vector

            records.append(ChunkRecord(
                id=p.chunk_id,
                document_id=document.id,
                chunk_index=p.chunk.chunk_index,
                title=document.title,
                content=p.chunk.content,
                content_hash=p.content_hash,
                embedding=vector,
                embedding_model=self._embedder.model,
                published_at=document.published_at,
                token_count=p.chunk.token_count,
            ))
        return records

    def _embed_texts(self, texts: list[str]) -> list[list[float] | None]:
        """Embed as one batch; on failure fall back to one call per text."""
        if not texts:
            return []
        try:
            return self._embedder.embed_batch(texts)
        except FinNewsRAGError as e:
            if len(texts) == 1:
                logger.warning("Skipping chunk: embedding failed (%s)", e)
                return [None]
            logger.warning(
                "Batch embedding of %d chunks failed (%s); embedding one by one",
                len(texts), e,
            )

        vectors: list[list[float] | None] = []
        for text in texts:
            try:
                vectors.append(self._embedder.embed(text))
            except FinNewsRAGError as e:
                logger.warning("Skipping chunk: embedding failed (%s)", e)
                vectors.append(None)
        return vectors
