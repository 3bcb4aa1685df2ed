# =============================================================================
# Unit Tests — Vector Store
# =============================================================================
#
# ChromaDB runs in-process (no external services needed). Each test gets its
# own collection so vector dimensionality never clashes.
# pgvector tests use mocked sessions: they cover dimension checks and error
# translation, not SQL behaviour, which needs a running PostgreSQL.
# =============================================================================

import asyncio
import uuid
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import DataError, OperationalError

from finnews_rag.services.documents import content_hash, make_chunk_id
from finnews_rag.services.errors import (
    EmbeddingDimensionMismatchError,
    VectorStoreUnavailableError,
)
from finnews_rag.services.retry import RetryPolicy
from finnews_rag.services.vectorstore import (
    ChromaVectorStore,
    ChunkRecord,
    PgVectorStore,
    SearchFilter,
    VectorSearchResult,
)

NO_WAIT = RetryPolicy(max_attempts=2, sleep=lambda _: None)


def _record(
    document_id: str,
    index: int,
    content: str,
    embedding: list[float],
    published_at: datetime | None = None,
    model: str = "test-model",
) -> ChunkRecord:
    return ChunkRecord(
        id=make_chunk_id(document_id, index),
        document_id=document_id,
        chunk_index=index,
        title=f"Title {document_id}",
        content=content,
        content_hash=content_hash(content),
        embedding=embedding,
        embedding_model=model,
        published_at=published_at,
        token_count=len(content.split()),
    )


class TestSearchFilter:
    def test_empty_filter_matches_everything(self):
        assert SearchFilter().matches(None)

    def test_before_is_exclusive_after_is_inclusive(self):
        cut = datetime(2024, 1, 1, tzinfo=UTC)
        assert not SearchFilter(published_before=cut).matches(cut)
        assert SearchFilter(published_after=cut).matches(cut)

    def test_undated_rows_never_match_a_date_bound(self):
        assert not SearchFilter(published_after=datetime(2020, 1, 1, tzinfo=UTC)).matches(None)


class TestChromaVectorStore:
    """Tests for ChromaVectorStore (in-process mode)."""

    _test_counter = 0

    def _make_store(self, dim: int = 3, model: str = "test-model") -> ChromaVectorStore:
        """Create a fresh ChromaVectorStore with a unique collection per test."""
        TestChromaVectorStore._test_counter += 1
        return ChromaVectorStore(
            dimensions=dim,
            embedding_model=model,
            collection_name=f"test_chunks_{uuid.uuid4().hex[:8]}_{TestChromaVectorStore._test_counter}",
            retry_policy=NO_WAIT,
        )

    def test_upsert_returns_chunk_ids(self):
        store = self._make_store()
        records = [
            _record("doc-1", 0, "Revenue increased by 15%", [1.0, 0.0, 0.0]),
            _record("doc-1", 1, "Expenses decreased by 5%", [0.0, 1.0, 0.0]),
        ]
        assert store.upsert(records) == [r.id for r in records]

    def test_search_sorted_by_similarity(self):
        store = self._make_store()
        store.upsert([
            _record("doc-1", 0, "Revenue increased by 15%", [1.0, 0.0, 0.0]),
            _record("doc-1", 1, "Revenue and costs", [0.8, 0.6, 0.0]),
        ])

        results = asyncio.run(store.search([1.0, 0.0, 0.0], threshold=None, limit=5))

        assert len(results) == 2
        assert all(isinstance(r, VectorSearchResult) for r in results)
        assert results[0].similarity_score >= results[1].similarity_score
        assert results[0].similarity_score == pytest.approx(1.0, abs=1e-4)
        assert results[1].similarity_score == pytest.approx(0.8, abs=1e-4)
        assert results[0].document_id == "doc-1"
        assert results[0].title == "Title doc-1"

    def test_threshold_is_strict(self):
        store = self._make_store()
        store.upsert([
            _record("doc-1", 0, "close", [1.0, 0.0, 0.0]),
            _record("doc-1", 1, "orthogonal", [0.0, 1.0, 0.0]),
        ])

        results = asyncio.run(store.search([1.0, 0.0, 0.0], threshold=0.5, limit=5))

        assert [r.content for r in results] == ["close"]

    def test_limit_respected(self):
        store = self._make_store()
        store.upsert([_record("doc-1", i, f"chunk {i}", [1.0, 0.1 * i, 0.0]) for i in range(6)])

        results = asyncio.run(store.search([1.0, 0.0, 0.0], limit=3))

        assert len(results) == 3
        assert [r.chunk_index for r in results] == [0, 1, 2]

    def test_date_filter_applied_before_ranking(self):
        store = self._make_store()
        old = datetime(2023, 6, 1, tzinfo=UTC)
        new = datetime(2024, 6, 1, tzinfo=UTC)
        store.upsert([
            _record("new", 0, "best match, too recent", [1.0, 0.0, 0.0], published_at=new),
            _record("old", 0, "weaker match, in range", [0.7, 0.7, 0.0], published_at=old),
        ])

        results = asyncio.run(store.search(
            [1.0, 0.0, 0.0],
            limit=1,
            search_filter=SearchFilter(published_before=datetime(2024, 1, 1, tzinfo=UTC)),
        ))

        assert [r.document_id for r in results] == ["old"]
        assert results[0].published_at == old

    def test_other_embedding_models_are_invisible(self):
        store = self._make_store(model="model-b")
        store.upsert([_record("doc-1", 0, "from model a", [1.0, 0.0, 0.0], model="model-a")])

        assert asyncio.run(store.search([1.0, 0.0, 0.0])) == []

    def test_upsert_same_id_overwrites(self):
        store = self._make_store()
        store.upsert([_record("doc-1", 0, "first version", [1.0, 0.0, 0.0])])
        store.upsert([_record("doc-1", 0, "second version", [1.0, 0.0, 0.0])])

        results = asyncio.run(store.search([1.0, 0.0, 0.0]))

        assert [r.content for r in results] == ["second version"]
        assert store.get_stats().chunk_count == 1

    def test_find_embeddings_by_content_hash(self):
        store = self._make_store()
        record = _record("doc-1", 0, "shared text", [0.0, 0.0, 1.0])
        store.upsert([record])

        found = store.find_embeddings([record.content_hash, content_hash("unknown")])

        assert list(found) == [record.content_hash]
        assert found[record.content_hash] == pytest.approx([0.0, 0.0, 1.0])

    def test_get_chunk_hashes_and_delete_document(self):
        store = self._make_store()
        records = [_record("doc-1", i, f"text {i}", [1.0, float(i), 0.0]) for i in range(3)]
        store.upsert(records + [_record("doc-2", 0, "other", [0.0, 1.0, 0.0])])

        assert store.get_chunk_hashes("doc-1") == {r.id: r.content_hash for r in records}

        assert store.delete_document("doc-1") == 3
        assert store.get_chunk_hashes("doc-1") == {}
        stats = store.get_stats()
        assert (stats.chunk_count, stats.chunked_document_count) == (1, 1)

    def test_dimension_mismatch_raises(self):
        store = self._make_store(dim=3)

        with pytest.raises(EmbeddingDimensionMismatchError) as exc_info:
            asyncio.run(store.search([1.0, 0.0]))
        assert (exc_info.value.expected, exc_info.value.actual) == (3, 2)

        with pytest.raises(EmbeddingDimensionMismatchError):
            store.upsert([_record("doc-1", 0, "bad", [1.0, 0.0, 0.0, 0.0])])


class TestPgVectorStore:
    """pgvector paths that don't need a live database."""

    def test_query_dimension_checked_before_database(self):
        factory = MagicMock()
        store = PgVectorStore(dimensions=3, async_session_factory=factory, retry_policy=NO_WAIT)

        with pytest.raises(EmbeddingDimensionMismatchError):
            asyncio.run(store.search([0.1] * 5))
        factory.assert_not_called()

    def test_upsert_executes_and_commits(self):
        session = MagicMock()
        store = PgVectorStore(
            dimensions=3, session_factory=lambda: session, retry_policy=NO_WAIT,
        )
        record = _record(str(uuid.uuid4()), 0, "text", [1.0, 0.0, 0.0])

        assert store.upsert([record]) == [record.id]
        session.execute.assert_called_once()
        session.commit.assert_called_once()
        session.close.assert_called_once()

    def test_empty_upsert_skips_database(self):
        factory = MagicMock()
        store = PgVectorStore(dimensions=3, session_factory=factory)
        assert store.upsert([]) == []
        factory.assert_not_called()

    def test_connection_errors_retried_then_translated(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("INSERT", {}, Exception("server closed"))
        store = PgVectorStore(
            dimensions=3, session_factory=lambda: session, retry_policy=NO_WAIT,
        )

        with pytest.raises(VectorStoreUnavailableError):
            store.upsert([_record(str(uuid.uuid4()), 0, "text", [1.0, 0.0, 0.0])])

        assert session.execute.call_count == 2
        assert session.rollback.call_count == 2

    def test_stored_dimension_conflict_is_fatal_not_retried(self):
        session = MagicMock()
        session.execute = AsyncMock(side_effect=_column_dimension_error())
        store = PgVectorStore(
            dimensions=3,
            async_session_factory=_async_factory(session),
            retry_policy=NO_WAIT,
        )

        with pytest.raises(EmbeddingDimensionMismatchError) as exc_info:
            asyncio.run(store.search([0.1, 0.2, 0.3], threshold=0.5))

        assert exc_info.value.expected == 1536
        assert exc_info.value.actual == 3
        assert session.execute.await_count == 1

    def test_upsert_into_narrower_column_is_fatal(self):
        session = MagicMock()
        session.execute.side_effect = DataError(
            "INSERT", {}, Exception("expected 1536 dimensions, not 3"),
        )
        store = PgVectorStore(
            dimensions=3, session_factory=lambda: session, retry_policy=NO_WAIT,
        )

        with pytest.raises(EmbeddingDimensionMismatchError):
            store.upsert([_record(str(uuid.uuid4()), 0, "text", [1.0, 0.0, 0.0])])
        session.rollback.assert_called_once()

    def test_other_data_errors_propagate_unchanged(self):
        session = MagicMock()
        session.execute = AsyncMock(
            side_effect=DataError("SELECT", {}, Exception("invalid input syntax for type uuid")),
        )
        store = PgVectorStore(
            dimensions=3,
            async_session_factory=_async_factory(session),
            retry_policy=NO_WAIT,
        )

        with pytest.raises(DataError):
            asyncio.run(store.search([0.1, 0.2, 0.3]))


def _column_dimension_error() -> DataError:
    return DataError("SELECT", {}, Exception("different vector dimensions 1536 and 3"))


def _async_factory(session: MagicMock) -> MagicMock:
    """async_sessionmaker stand-in whose sessions are `session`."""
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory
