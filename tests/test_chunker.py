# =============================================================================
# Unit Tests — Chunker Service
# =============================================================================
#
# Window arithmetic is tested with a one-token-per-character encoder so the
# expected spans can be written down by hand. A second group runs against the
# real cl100k_base encoding and is skipped when tiktoken can't load it
# (the BPE file is downloaded on first use).
# =============================================================================

import math

import pytest

from finnews_rag.services.chunker import (
    chunk_document,
    count_tokens,
    iter_chunks,
    window_starts,
)
from finnews_rag.services.documents import Document
from tests.fakes import CharEncoder

ENCODER = CharEncoder()


def _chunks(text: str, w: int, o: int) -> list[str]:
    return list(iter_chunks(text, max_tokens=w, overlap_tokens=o, encoder=ENCODER))


class TestIterChunks:
    """Tests for iter_chunks() window layout."""

    def test_short_text_returned_unchanged(self):
        assert _chunks("hello", 10, 3) == ["hello"]

    def test_text_exactly_window_size_is_one_chunk(self):
        assert _chunks("abcdefghij", 10, 3) == ["abcdefghij"]

    def test_empty_text_yields_single_empty_chunk(self):
        assert _chunks("", 10, 3) == [""]

    def test_final_window_is_end_anchored(self):
        # N=11, W=4, O=1 → starts 0, 3, 6, 7
        assert _chunks("abcdefghijk", 4, 1) == ["abcd", "defg", "ghij", "hijk"]

    def test_zero_overlap_partitions_text(self):
        assert _chunks("abcdefghijkl", 4, 0) == ["abcd", "efgh", "ijkl"]

    @pytest.mark.parametrize(
        ("n", "w", "o"),
        [(11, 4, 1), (10, 4, 1), (100, 10, 3), (501, 500, 200), (1234, 500, 200), (7, 2, 1)],
    )
    def test_chunk_count_formula(self, n, w, o):
        chunks = _chunks("x" * n, w, o)
        assert len(chunks) == math.ceil((n - w) / (w - o)) + 1
        assert all(len(c) == w for c in chunks)

    @pytest.mark.parametrize(("n", "w", "o"), [(23, 5, 2), (50, 7, 0), (31, 10, 9)])
    def test_windows_cover_every_token_with_exact_overlap(self, n, w, o):
        starts = window_starts(n, w, o)

        assert starts[0] == 0
        assert starts[-1] + w == n
        for prev, nxt in zip(starts, starts[1:-1], strict=False):
            assert nxt - prev == w - o  # overlap exactly O
        # Last pair may overlap by more, never by less (no gap)
        if len(starts) > 1:
            assert 0 < starts[-1] - starts[-2] <= w - o

    def test_chunks_are_slices_of_source(self):
        text = "The quick brown fox jumps over the lazy dog"
        for chunk in _chunks(text, 8, 3):
            assert chunk in text

    def test_is_lazy(self):
        gen = iter_chunks("abcdefghij" * 10, max_tokens=5, overlap_tokens=1, encoder=ENCODER)
        assert next(gen) == "abcde"

    @pytest.mark.parametrize(("w", "o"), [(0, 0), (-1, 0), (5, 5), (5, 6), (5, -1)])
    def test_invalid_parameters_raise_immediately(self, w, o):
        with pytest.raises(ValueError):
            iter_chunks("text", max_tokens=w, overlap_tokens=o, encoder=ENCODER)

    def test_tokenizer_errors_propagate(self):
        class BrokenEncoder(CharEncoder):
            def encode_ordinary(self, text):
                raise RuntimeError("bad bytes")

        with pytest.raises(RuntimeError):
            list(iter_chunks("text", encoder=BrokenEncoder()))


class TestChunkDocument:
    """Tests for chunk_document()."""

    def test_chunks_title_and_body(self):
        doc = Document(id="d1", title="Hi", body="there")
        chunks = chunk_document(doc, chunk_size=50, chunk_overlap=10, encoder=ENCODER)

        assert len(chunks) == 1
        assert chunks[0].content == "Hi\n\nthere"
        assert chunks[0].chunk_index == 0
        assert chunks[0].token_count == len("Hi\n\nthere")

    def test_whitespace_windows_dropped_and_indices_contiguous(self):
        doc = Document(id="d1", title="T", body="abc" + " " * 20 + "def")
        chunks = chunk_document(doc, chunk_size=5, chunk_overlap=0, encoder=ENCODER)

        assert all(c.content.strip() for c in chunks)
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        assert chunks[0].content == "T\n\nab"
        assert chunks[-1].content.endswith("def")

    def test_token_counts_match_window_size(self):
        doc = Document(id="d1", title="Title", body="x" * 200)
        chunks = chunk_document(doc, chunk_size=50, chunk_overlap=10, encoder=ENCODER)

        assert all(c.token_count == 50 for c in chunks)


# ---------------------------------------------------------------------------
# Real tokenizer (cl100k_base)
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def cl100k():
    tiktoken = pytest.importorskip("tiktoken")
    try:
        return tiktoken.get_encoding("cl100k_base")
    except Exception as e:
        pytest.skip(f"cl100k_base unavailable: {e}")


class TestTiktokenChunking:
    """Same properties against the production encoding."""

    def test_short_text_round_trip(self, cl100k):
        text = "Acme Corp reported record revenue."
        assert list(iter_chunks(text, 500, 200, encoder=cl100k)) == [text]

    def test_long_multilingual_text_is_sliced_losslessly(self, cl100k):
        text = " ".join(
            f"삼성전자 실적 발표 {i}: revenue rose 12% 🚀 in Q{i % 4 + 1}."
            for i in range(200)
        )
        n = count_tokens(text, encoder=cl100k)
        chunks = list(iter_chunks(text, 100, 30, encoder=cl100k))

        assert n > 100
        assert len(chunks) == math.ceil((n - 100) / 70) + 1
        assert text.startswith(chunks[0])
        assert text.endswith(chunks[-1])
        for chunk in chunks:
            assert chunk in text
