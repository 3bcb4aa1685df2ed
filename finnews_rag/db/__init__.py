# =============================================================================
# Database Package
# =============================================================================
# Provides lazily created SQLAlchemy engines, sessions, and ORM models.
#
# Key exports:
#   - engine.get_sync_session: session context manager for Celery workers
#   - engine.get_async_session_factory: sessions for retrieval searches
#   - models.NewsArticle, models.NewsChunk: articles and their embedded chunks
# =============================================================================
