# =============================================================================
# Celery Task Definitions — News Ingestion
# =============================================================================
#
# Two tasks feed the vector store from the `news_articles` table:
#   - ingest_news_articles: newest articles first, in batches, optional limit
#   - ingest_news_article:  one article by id (e.g. right after scraping it)
#
# Both delegate to IngestionPipeline, which makes re-runs cheap: chunks that
# are already stored unchanged cost neither an embedding call nor a write.
#
# IMPORTANT: Celery workers are SYNCHRONOUS.
# - Do NOT use `async/await` in Celery tasks
# - Do NOT use the async SQLAlchemy engine (use the sync engine instead)
#
# RETRY STRATEGY:
# max_retries=3, backoff 60s → 120s → 240s, for TransientError only
# (database or embedding service still down after in-call retries).
# Per-document failures are isolated by the pipeline so the rest of the batch
# still runs. If any of them was transient, the task is retried once the
# whole scan is done; the re-run skips everything already stored unchanged.
# Permanent per-document failures are only reported in the task result.
# =============================================================================

import logging
import uuid
from collections.abc import Iterator
from dataclasses import asdict

from sqlalchemy import select

from finnews_rag.config import settings
from finnews_rag.db.engine import get_sync_session
from finnews_rag.db.models import NewsArticle
from finnews_rag.services.documents import Document
from finnews_rag.services.embedder import get_embedding_client
from finnews_rag.services.errors import TransientError
from finnews_rag.services.ingestion import IngestionPipeline, IngestionSummary
from finnews_rag.services.vectorstore import get_vector_store, translate_db_errors
from finnews_rag.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _build_pipeline() -> IngestionPipeline:
    return IngestionPipeline(
        embedder=get_embedding_client(),
        store=get_vector_store(),
    )


def _iter_document_batches(
    limit: int | None,
    batch_size: int,
) -> Iterator[list[Document]]:
    """
    Yield stored articles as Documents, newest first, `batch_size` at a time.

    Article ids are read up front so that a batch's session is closed before
    the (slow) embedding work for it starts.
    """
    with translate_db_errors(), get_sync_session() as session:
        stmt = select(NewsArticle.id).order_by(
            NewsArticle.published_at.desc().nulls_last(), NewsArticle.id,
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        article_ids = list(session.scalars(stmt))

    logger.info("Found %d articles to ingest", len(article_ids))

    for start in range(0, len(article_ids), batch_size):
        batch_ids = article_ids[start : start + batch_size]
        with translate_db_errors(), get_sync_session() as session:
            articles = session.scalars(
                select(NewsArticle).where(NewsArticle.id.in_(batch_ids))
            ).all()
            by_id = {a.id: Document.from_article(a) for a in articles}
        # Keep newest-first order; skip rows deleted since the id scan
        yield [by_id[i] for i in batch_ids if i in by_id]


def _result(summaries: list[IngestionSummary]) -> dict:
    failed = [s for s in summaries if not s.success]
    return {
        "status": "completed" if not failed else "completed_with_errors",
        "document_count": len(summaries),
        "failed_documents": [s.document_id for s in failed],
        "chunk_count": sum(s.chunk_count for s in summaries),
        "embedded": sum(s.embedded for s in summaries),
        "reused_embeddings": sum(s.reused_embeddings for s in summaries),
        "skipped_unchanged": sum(s.skipped_unchanged for s in summaries),
        "failed_chunks": sum(s.failed_chunks for s in summaries),
        "vectorstore": settings.vectorstore_type,
        "embedding_model": settings.embedding_model,
    }


# ---------------------------------------------------------------------------
# Ingestion Tasks
# ---------------------------------------------------------------------------


@celery_app.task(
    bind=True,
    name="ingest_news_articles",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_news_articles(
    self,
    limit: int | None = None,
    reprocess: bool = False,
) -> dict:
    """
    Ingest stored news articles into the vector store.

    Args:
        self: Celery task instance (bound task, provides self.request.id).
        limit: Only the `limit` most recent articles (None = all).
        reprocess: Delete and rebuild each article's chunks.

    Returns:
        dict with aggregate counts and the ids of documents that failed.
    """
    task_id = self.request.id
    logger.info(
        "[%s] Starting news ingestion: limit=%s, reprocess=%s, "
        "chunk_size=%d, chunk_overlap=%d, vectorstore=%s",
        task_id, limit, reprocess,
        settings.chunk_size, settings.chunk_overlap, settings.vectorstore_type,
    )

    try:
        pipeline = _build_pipeline()
        summaries: list[IngestionSummary] = []
        for batch in _iter_document_batches(limit, settings.ingestion_batch_size):
            summaries.extend(pipeline.ingest_many(batch, reprocess=reprocess))
            logger.info("[%s] Processed %d articles so far", task_id, len(summaries))

        transient = [s.document_id for s in summaries if s.retryable]
        if transient:
            raise TransientError(
                f"Transient failures for {len(transient)} articles: {transient[:10]}"
            )
    except TransientError as exc:
        logger.warning("[%s] News ingestion interrupted: %s", task_id, exc)
        raise self.retry(exc=exc, countdown=60 * 2 ** self.request.retries)

    result = _result(summaries)
    logger.info("[%s] News ingestion complete: %s", task_id, result)
    return result


@celery_app.task(
    bind=True,
    name="ingest_news_article",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_news_article(self, article_id: str, reprocess: bool = False) -> dict:
    """Ingest a single stored article by id."""
    task_id = self.request.id

    try:
        with translate_db_errors(), get_sync_session() as session:
            article = session.get(NewsArticle, uuid.UUID(article_id))
            if article is None:
                raise ValueError(f"News article {article_id} not found")
            document = Document.from_article(article)

        summary = _build_pipeline().ingest(document, reprocess=reprocess)
    except TransientError as exc:
        logger.warning("[%s] Ingestion of %s interrupted: %s", task_id, article_id, exc)
        raise self.retry(exc=exc, countdown=60 * 2 ** self.request.retries)

    logger.info("[%s] Ingested article %s: %d chunks", task_id, article_id, summary.chunk_count)
    return asdict(summary)
