# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
# Handles the offline ingestion of scraped news:
#   - celery_app.py: Celery application configuration
#   - tasks.py: Task definitions (news article ingestion)
#
# Embedding a backlog of articles is slow and network-bound. Running it in
# Celery workers keeps it off the retrieval path and lets interrupted runs
# be retried; the ingestion pipeline resumes where it stopped.
# =============================================================================
