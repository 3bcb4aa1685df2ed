# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs the offline half of the system: turning scraped news articles
# into embedded, searchable chunks.
#   news_articles rows → Chunk → Embed → Store (news_chunks)
#
# ARCHITECTURE:
# ┌───────────┐     ┌───────┐     ┌──────────────┐     ┌────────┐
# │ Scheduler │────▶│ Redis │────▶│ Celery Worker│────▶│ Redis  │
# │ (producer)│     │(broker)│    │ (consumer)   │     │(result)│
# └───────────┘     └───────┘     └──────────────┘     └────────┘
#    db 0 ────────────┘                                   └── db 1
#
# The broker (Redis db 0) queues tasks. Workers consume and execute them.
# Results (ingestion summaries) are kept in Redis db 1.
# =============================================================================

from celery import Celery

from finnews_rag.config import settings

celery_app = Celery(
    "finnews_rag.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # --- Serialization ---
    # JSON only: pickle can execute arbitrary code during deserialization.
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # --- Reliability ---
    # Acknowledge only after completion so a crashed worker's task is
    # re-queued. Safe because ingestion is idempotent per article.
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # One task at a time per worker process: ingestion batches are long and
    # embedding-bound, so prefetching only starves other workers.
    worker_prefetch_multiplier=1,

    # --- Timeouts ---
    # Soft limit raises SoftTimeLimitExceeded inside the task; hard limit kills.
    task_soft_time_limit=300,
    task_time_limit=600,

    # --- Results ---
    result_expires=3600,

    # --- Task Discovery ---
    include=["finnews_rag.workers.tasks"],
)
