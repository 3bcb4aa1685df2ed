# =============================================================================
# Unit Tests — Ingestion Pipeline
# =============================================================================
#
# Runs the pipeline against an in-memory store and a bag-of-words embedder
# that records every text it is asked to embed.
# =============================================================================

from datetime import UTC, datetime

import pytest

from finnews_rag.services.documents import Document, content_hash, make_chunk_id
from finnews_rag.services.errors import (
    EmbeddingInputRejectedError,
    EmbeddingUnavailableError,
    VectorStoreUnavailableError,
)
from finnews_rag.services.ingestion import IngestionPipeline
from tests.fakes import BagOfWordsEmbedder, CharEncoder, InMemoryVectorStore

DOC = Document(
    id="news-1",
    title="Acme earnings",
    body="Acme revenue rose sharply in the quarter. " * 5,
    published_at=datetime(2024, 4, 2, tzinfo=UTC),
)


def _pipeline(embedder=None, store=None, chunk_size=60, chunk_overlap=20, flush_size=20):
    embedder = embedder or BagOfWordsEmbedder()
    store = store or InMemoryVectorStore(dimensions=embedder.dimensions)
    pipeline = IngestionPipeline(
        embedder,
        store,
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
        flush_size=flush_size,
        encoder=CharEncoder(),
    )
    return pipeline, embedder, store


class TestIngest:
    """Tests for IngestionPipeline.ingest()."""

    def test_stores_every_chunk_with_metadata(self):
        pipeline, embedder, store = _pipeline()

        summary = pipeline.ingest(DOC)

        assert summary.success
        assert summary.chunk_count > 1
        assert summary.embedded == summary.upserted == summary.chunk_count
        assert sorted(store.records) == sorted(summary.chunk_ids)

        first = store.records[make_chunk_id("news-1", 0)]
        assert first.document_id == "news-1"
        assert first.title == "Acme earnings"
        assert first.content.startswith("Acme earnings\n\n")
        assert first.content_hash == content_hash(first.content)
        assert first.embedding_model == "fake-bow"
        assert first.published_at == DOC.published_at
        assert first.token_count == 60

    def test_second_run_is_idempotent_and_makes_no_embedding_calls(self):
        pipeline, embedder, store = _pipeline()

        first = pipeline.ingest(DOC)
        calls_after_first = len(embedder.calls)
        second = pipeline.ingest(DOC)

        assert sorted(second.chunk_ids) == sorted(first.chunk_ids)
        assert len(store.records) == first.chunk_count
        assert len(embedder.calls) == calls_after_first
        assert second.skipped_unchanged == second.chunk_count
        assert second.upserted == 0

    def test_identical_text_reuses_stored_embedding(self):
        pipeline, embedder, store = _pipeline()
        pipeline.ingest(DOC)
        calls_after_first = len(embedder.calls)

        copy = Document(id="news-2", title=DOC.title, body=DOC.body)
        summary = pipeline.ingest(copy)

        assert len(embedder.calls) == calls_after_first
        assert summary.reused_embeddings == summary.chunk_count
        assert len(store.records) == 2 * summary.chunk_count

    def test_repeated_text_within_document_embedded_once(self):
        pipeline, embedder, _ = _pipeline(chunk_size=10, chunk_overlap=0)
        doc = Document(id="rep", title="abcdefgh", body="abcdefghij" * 3)

        pipeline.ingest(doc)

        assert sorted(embedder.calls) == sorted(set(embedder.calls))

    def test_upserts_flushed_in_groups(self):
        pipeline, _, store = _pipeline(chunk_size=10, chunk_overlap=0, flush_size=2)
        doc = Document(id="flush", title="t", body="x" * 43)  # 46 chars → 5 chunks

        summary = pipeline.ingest(doc)

        assert summary.chunk_count == 5
        assert [len(batch) for batch in store.upsert_batches] == [2, 2, 1]

    def test_failed_batch_falls_back_to_single_chunks(self):
        class PickyEmbedder(BagOfWordsEmbedder):
            def embed_batch(self, texts):
                raise EmbeddingUnavailableError("batch endpoint down")

            def embed(self, text):
                if "POISON" in text:
                    raise EmbeddingInputRejectedError("rejected")
                return super().embed(text)

        pipeline, _, store = _pipeline(
            embedder=PickyEmbedder(), chunk_size=10, chunk_overlap=0,
        )
        doc = Document(id="p", title="t", body="aaaaaaaaaa" + "POISONxxxx" + "bbbbbbbbbb")

        summary = pipeline.ingest(doc)

        assert summary.failed_chunks == 1
        assert summary.embedded == summary.chunk_count - 1
        assert all("POISON" not in r.content for r in store.records.values())
        assert len(store.records) == summary.chunk_count - 1

    def test_reprocess_deletes_then_rebuilds(self):
        pipeline, embedder, store = _pipeline()
        pipeline.ingest(DOC)
        calls_after_first = len(embedder.calls)

        summary = pipeline.ingest(DOC, reprocess=True)

        assert summary.deleted == summary.chunk_count
        assert summary.skipped_unchanged == 0
        assert summary.upserted == summary.chunk_count
        assert len(store.records) == summary.chunk_count
        # Deleted chunks can no longer donate vectors
        assert len(embedder.calls) == calls_after_first + summary.chunk_count

    def test_whitespace_only_document_produces_nothing(self):
        pipeline, embedder, store = _pipeline()

        summary = pipeline.ingest(Document(id="blank", title=" ", body="   "))

        assert summary.chunk_count == 0
        assert embedder.calls == []
        assert store.records == {}

    def test_invalid_flush_size(self):
        with pytest.raises(ValueError):
            _pipeline(flush_size=0)


class TestIngestMany:
    """Tests for IngestionPipeline.ingest_many() failure isolation."""

    def test_one_failing_document_does_not_stop_others(self):
        class FlakyStore(InMemoryVectorStore):
            def get_chunk_hashes(self, document_id):
                if document_id == "bad":
                    raise VectorStoreUnavailableError("connection dropped")
                return super().get_chunk_hashes(document_id)

        embedder = BagOfWordsEmbedder()
        store = FlakyStore(dimensions=embedder.dimensions)
        pipeline, _, _ = _pipeline(embedder=embedder, store=store)

        summaries = pipeline.ingest_many([
            Document(id="good-1", title="a", body="Acme revenue"),
            Document(id="bad", title="b", body="Globex revenue"),
            Document(id="good-2", title="c", body="Acme profit"),
        ])

        assert [s.document_id for s in summaries] == ["good-1", "bad", "good-2"]
        assert [s.success for s in summaries] == [True, False, True]
        assert [s.retryable for s in summaries] == [False, True, False]
        assert "connection dropped" in summaries[1].error
        assert store.get_stats().chunked_document_count == 2
