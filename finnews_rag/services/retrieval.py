# =============================================================================
# Retrieval Orchestrator — Multi-Query Search, Relaxation, Merge & Rank
# =============================================================================
#
# Produces the ranked news context for one stock:
#
#   stock_code + metadata
#        │
#        ▼
#   QueryExpander ──▶ N query variants (each with limit + threshold)
#        │
#        ▼  (concurrently, at most `max_concurrency` at a time)
#   ┌─────────────────────────────────────────────────────────────┐
#   │ embed(variant.query)                  (worker thread)       │
#   │ probe = search(q, threshold=None, limit=probe_limit)        │
#   │ threshold = relax(variant.threshold, max(probe))            │
#   │ hits  = search(q, threshold, variant.limit, date filter)    │
#   └─────────────────────────────────────────────────────────────┘
#        │
#        ▼  (after every variant finished, failed or timed out)
#   merge_candidates: dedupe by chunk id → sort by similarity → cap
#
# ADAPTIVE RELAXATION:
# Similarity distributions shift with corpus and embedding model. A threshold
# tuned on one corpus can reject everything on another. The probe reveals
# the best score actually achievable for this query; if it falls short of the
# configured threshold, the threshold drops to just below it:
#
#   effective = min(configured, max(floor, probe_max - margin))
#
# Relaxation never raises a threshold and never goes below `floor`.
#
# FAILURE SEMANTICS:
# - A variant whose embedding or search fails (after retries) or times out is
#   skipped and recorded in the trace. The other variants still count.
# - Every variant failing gives an empty result, not an exception.
# - EmbeddingDimensionMismatchError is fatal: ranking against vectors from a
#   different embedding space would return confident nonsense.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from finnews_rag.config import settings
from finnews_rag.models.requests import RetrievalRequest, StockMetadata
from finnews_rag.models.responses import ContextItem, RetrievalResponse, VariantTrace
from finnews_rag.services.embedder import EmbeddingClient, get_embedding_client
from finnews_rag.services.errors import EmbeddingDimensionMismatchError, FinNewsRAGError
from finnews_rag.services.query_expander import QueryExpander, QueryVariant
from finnews_rag.services.vectorstore import (
    SearchFilter,
    VectorStore,
    check_dimensions,
    get_vector_store,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RetrievalCandidate:
    """A chunk returned by one query variant, tagged with its provenance."""

    chunk_id: str
    document_id: str
    title: str
    content: str
    published_at: datetime | None
    similarity: float
    variant_type: str
    priority: int


@dataclass
class VariantOutcome:
    """Trace of a single variant: thresholds used, hits, or why it failed."""

    variant: QueryVariant
    effective_threshold: float | None = None
    probe_max_similarity: float | None = None
    result_count: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def relaxed(self) -> bool:
        return (
            self.effective_threshold is not None
            and self.effective_threshold < self.variant.threshold
        )


@dataclass
class RetrievalResult:
    candidates: list[RetrievalCandidate] = field(default_factory=list)
    variants: list[VariantOutcome] = field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """At least one variant was skipped."""
        return any(v.failed for v in self.variants)

    @property
    def all_failed(self) -> bool:
        return bool(self.variants) and all(v.failed for v in self.variants)


# ---------------------------------------------------------------------------
# Pure Helpers
# ---------------------------------------------------------------------------


def effective_threshold(
    configured: float,
    probe_max: float | None,
    floor: float = 0.1,
    margin: float = 0.1,
) -> float:
    """
    Threshold to use for the real search, given the probe's best score.

    An empty probe (None) leaves the configured threshold untouched: there is
    nothing to calibrate against.

    >>> round(effective_threshold(0.7, 0.55), 2)
    0.45
    >>> effective_threshold(0.7, 0.9)
    0.7
    """
    if probe_max is None or probe_max >= configured:
        return configured
    return min(configured, max(floor, probe_max - margin))


def merge_candidates(
    candidates: Iterable[RetrievalCandidate],
    cap: int | None = None,
) -> list[RetrievalCandidate]:
    """
    Deduplicate by chunk id, rank, and truncate.

    - Duplicate chunk ids keep the highest similarity; equal scores keep the
      earliest variant (lowest priority value).
    - Ranking is similarity descending, then priority, then chunk id, so the
      order is total and the function is idempotent:
      merge_candidates(merge_candidates(x, k), k) == merge_candidates(x, k)
    """
    best: dict[str, RetrievalCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.chunk_id)
        if current is None or (
            (candidate.similarity, -candidate.priority)
            > (current.similarity, -current.priority)
        ):
            best[candidate.chunk_id] = candidate

    ranked = sorted(
        best.values(),
        key=lambda c: (-c.similarity, c.priority, c.chunk_id),
    )
    if cap is not None:
        ranked = ranked[:cap]
    return ranked


def format_context(candidates: Iterable[RetrievalCandidate]) -> str:
    """Render candidates as numbered passages for a language-model prompt."""
    blocks = []
    for i, c in enumerate(candidates, start=1):
        date = c.published_at.date().isoformat() if c.published_at else "undated"
        blocks.append(f"[{i}] {c.title} ({date}, relevance {c.similarity:.3f})\n{c.content}")
    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RetrievalOrchestrator:
    """
    Runs query variants against the vector store and merges the results.

    Collaborators are injected; lifecycle (clients, connection pools) stays
    with the caller. Tuning parameters default to settings.retrieval_*.

    Usage:
        orchestrator = RetrievalOrchestrator(embedder, store)
        result = await orchestrator.retrieve("ACME", metadata)
    """

    def __init__(
        self,
        embedder: EmbeddingClient,
        store: VectorStore,
        expander: QueryExpander | None = None,
        overall_cap: int | None = None,
        probe_limit: int | None = None,
        relaxation_enabled: bool | None = None,
        relaxation_floor: float | None = None,
        relaxation_margin: float | None = None,
        max_concurrency: int | None = None,
        variant_timeout: float | None = None,
    ) -> None:
        self._embedder = embedder
        self._store = store
        self._expander = expander or QueryExpander()
        self._overall_cap = _default(overall_cap, settings.retrieval_overall_cap)
        self._probe_limit = _default(probe_limit, settings.retrieval_probe_limit)
        self._relaxation_enabled = _default(
            relaxation_enabled, settings.retrieval_relaxation_enabled,
        )
        self._floor = _default(relaxation_floor, settings.retrieval_relaxation_floor)
        self._margin = _default(relaxation_margin, settings.retrieval_relaxation_margin)
        self._max_concurrency = _default(max_concurrency, settings.retrieval_max_concurrency)
        self._variant_timeout = _default(variant_timeout, settings.retrieval_variant_timeout)

    async def retrieve(
        self,
        stock_code: str,
        metadata: StockMetadata | None = None,
        overall_cap: int | None = None,
        search_filter: SearchFilter | None = None,
        timeout: float | None = None,
    ) -> RetrievalResult:
        """
        Ranked, deduplicated news candidates for a stock.

        Args:
            stock_code: Ticker / exchange code. Must not be blank.
            metadata: Optional company details; each field adds variants.
            overall_cap: Max candidates returned (defaults to the configured cap).
            search_filter: Date bounds applied to every variant's real search.
            timeout: Overall deadline in seconds. Variants still running at
                the deadline are cancelled and counted as failed.

        Raises:
            ValueError: Blank stock_code or negative cap.
            EmbeddingDimensionMismatchError: Query vectors don't match the store.
        """
        cap = self._overall_cap if overall_cap is None else overall_cap
        if cap < 0:
            raise ValueError("overall_cap must be >= 0")

        variants = self._expander.expand(stock_code, metadata)
        outcomes = [VariantOutcome(variant=v) for v in variants]
        semaphore = asyncio.Semaphore(self._max_concurrency)

        tasks = [
            asyncio.create_task(self._run_variant(outcome, semaphore, search_filter))
            for outcome in outcomes
        ]
        done, pending = await asyncio.wait(
            tasks, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION,
        )

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Only a dimension mismatch escapes _run_variant
        fatal = [t.exception() for t in done if not t.cancelled() and t.exception()]
        if fatal:
            raise fatal[0]

        candidates: list[RetrievalCandidate] = []
        for task, outcome in zip(tasks, outcomes, strict=True):
            if task in pending:
                outcome.error = "timeout"
                logger.warning(
                    "Variant %r (%s) cancelled at overall deadline of %ss",
                    outcome.variant.query, outcome.variant.variant_type, timeout,
                )
                continue
            candidates.extend(task.result())

        result = RetrievalResult(
            candidates=merge_candidates(candidates, cap),
            variants=outcomes,
        )

        failed = sum(1 for o in outcomes if o.failed)
        logger.info(
            "Retrieved %d candidates for %s (%d raw, %d/%d variants failed)",
            len(result.candidates), stock_code, len(candidates), failed, len(outcomes),
        )
        return result

    async def retrieve_context(
        self,
        stock_code: str,
        metadata: StockMetadata | None = None,
        overall_cap: int | None = None,
        search_filter: SearchFilter | None = None,
        timeout: float | None = None,
    ) -> RetrievalResponse:
        """
        Consumer entry point: like retrieve(), but never raises.

        Failures become `success=False` with a diagnostic message, so the
        calling service can fall back to a "no context available" answer.
        """
        try:
            result = await self.retrieve(
                stock_code,
                metadata=metadata,
                overall_cap=overall_cap,
                search_filter=search_filter,
                timeout=timeout,
            )
        except EmbeddingDimensionMismatchError as e:
            logger.error("Retrieval aborted for %s: %s", stock_code, e)
            return RetrievalResponse(
                success=False, message=e.message, stock_code=stock_code, degraded=True,
            )
        except ValueError as e:
            return RetrievalResponse(success=False, message=str(e), stock_code=stock_code)
        except Exception as e:
            logger.exception("Retrieval failed unexpectedly for %s", stock_code)
            return RetrievalResponse(
                success=False,
                message=f"Retrieval failed: {e}",
                stock_code=stock_code,
                degraded=True,
            )

        traces = [_trace(o) for o in result.variants]
        context = [
            ContextItem(
                title=c.title,
                text=c.content,
                timestamp=c.published_at,
                score=c.similarity,
                chunk_id=c.chunk_id,
                document_id=c.document_id,
                variant_type=c.variant_type,
            )
            for c in result.candidates
        ]

        if result.all_failed:
            message = f"All {len(result.variants)} query variants failed; no context available"
        elif not context:
            message = "No relevant news found"
        else:
            succeeded = sum(1 for v in result.variants if not v.failed)
            message = (
                f"Retrieved {len(context)} passages from "
                f"{succeeded}/{len(result.variants)} query variants"
            )

        return RetrievalResponse(
            success=not result.all_failed,
            message=message,
            stock_code=stock_code,
            degraded=result.degraded,
            context=context,
            variants=traces,
        )

    async def retrieve_request(self, request: RetrievalRequest) -> RetrievalResponse:
        """retrieve_context() for a validated RetrievalRequest payload."""
        search_filter = SearchFilter(
            published_before=request.published_before,
            published_after=request.published_after,
        )
        return await self.retrieve_context(
            request.stock_code,
            metadata=request.metadata,
            overall_cap=request.overall_cap,
            search_filter=None if search_filter.is_empty() else search_filter,
            timeout=request.timeout,
        )

    # -----------------------------------------------------------------------
    # Per-variant work
    # -----------------------------------------------------------------------

    async def _run_variant(
        self,
        outcome: VariantOutcome,
        semaphore: asyncio.Semaphore,
        search_filter: SearchFilter | None,
    ) -> list[RetrievalCandidate]:
        """Search one variant; record (not raise) every non-fatal failure."""
        variant = outcome.variant
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    self._search_variant(outcome, search_filter),
                    timeout=self._variant_timeout,
                )
            except EmbeddingDimensionMismatchError:
                raise
            except asyncio.TimeoutError:
                outcome.error = "timeout"
                logger.warning(
                    "Variant %r (%s) timed out after %ss",
                    variant.query, variant.variant_type, self._variant_timeout,
                )
            except FinNewsRAGError as e:
                outcome.error = e.code
                logger.warning(
                    "Skipping variant %r (%s): %s",
                    variant.query, variant.variant_type, e,
                )
            except Exception:
                outcome.error = "unexpected"
                logger.exception(
                    "Skipping variant %r (%s) after unexpected error",
                    variant.query, variant.variant_type,
                )
        return []

    async def _search_variant(
        self,
        outcome: VariantOutcome,
        search_filter: SearchFilter | None,
    ) -> list[RetrievalCandidate]:
        variant = outcome.variant

        # The embedding client is synchronous; keep the event loop free
        vector = await asyncio.to_thread(self._embedder.embed, variant.query)
        check_dimensions(self._store.dimensions, vector)

        threshold = variant.threshold
        if self._relaxation_enabled:
            probe = await self._store.search(vector, threshold=None, limit=self._probe_limit)
            if probe:
                outcome.probe_max_similarity = max(r.similarity_score for r in probe)
            threshold = effective_threshold(
                variant.threshold, outcome.probe_max_similarity, self._floor, self._margin,
            )
            if threshold < variant.threshold:
                logger.info(
                    "Relaxed threshold for %r from %.3f to %.3f (probe max %.3f)",
                    variant.query, variant.threshold, threshold,
                    outcome.probe_max_similarity,
                )
        outcome.effective_threshold = threshold

        hits = await self._store.search(
            vector,
            threshold=threshold,
            limit=variant.limit,
            search_filter=search_filter,
        )
        outcome.result_count = len(hits)

        return [
            RetrievalCandidate(
                chunk_id=hit.chunk_id,
                document_id=hit.document_id,
                title=hit.title,
                content=hit.content,
                published_at=hit.published_at,
                similarity=hit.similarity_score,
                variant_type=variant.variant_type,
                priority=variant.priority,
            )
            for hit in hits
        ]


def get_retrieval_orchestrator() -> RetrievalOrchestrator:
    """Orchestrator wired to the configured embedding client and store."""
    return RetrievalOrchestrator(
        embedder=get_embedding_client(),
        store=get_vector_store(),
    )


def _default(value, fallback):
    return fallback if value is None else value


def _trace(outcome: VariantOutcome) -> VariantTrace:
    return VariantTrace(
        query=outcome.variant.query,
        variant_type=outcome.variant.variant_type,
        limit=outcome.variant.limit,
        configured_threshold=outcome.variant.threshold,
        effective_threshold=outcome.effective_threshold,
        probe_max_similarity=outcome.probe_max_similarity,
        result_count=outcome.result_count,
        error=outcome.error,
    )
