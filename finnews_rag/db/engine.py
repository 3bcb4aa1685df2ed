# =============================================================================
# Database Engine & Session Management
# =============================================================================
#
# Two engines share one PostgreSQL database:
#   - async (asyncpg)  → retrieval searches, awaited by the orchestrator
#   - sync (psycopg2)  → ingestion inside Celery workers, which are
#                        synchronous and cannot drive the async engine
#
# DESIGN DECISION: Both engines are created lazily.
# Importing this module never opens a pool or requires a driver; callers
# that inject their own session factories (tests, other services) never
# touch these at all. Lifecycle is owned by whoever calls the getters, and
# `dispose_engines()` tears both down.
#
# SESSION LIFECYCLE (sync):
#   create → yield → commit (or rollback on error) → close
# =============================================================================

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import Session, sessionmaker

from finnews_rag.config import settings
from finnews_rag.db.models import Base

# ---------------------------------------------------------------------------
# Async Engine — retrieval
# ---------------------------------------------------------------------------
# - pool_size=5 / max_overflow=10: enough for retrieval_max_concurrency
#   variant searches in flight at once.
# - expire_on_commit=False: loaded rows stay readable after the session
#   closes (attribute refresh is impossible outside an async session).
# ---------------------------------------------------------------------------

_async_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Lazily create and cache the async SQLAlchemy engine."""
    global _async_engine
    if _async_engine is None:
        _async_engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _async_engine


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Lazily create and cache the async session factory."""
    global _async_session_factory
    if _async_session_factory is None:
        _async_session_factory = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _async_session_factory


# ---------------------------------------------------------------------------
# Sync Engine — ingestion (Celery workers)
# ---------------------------------------------------------------------------

_sync_engine: Engine | None = None
_sync_session_factory: sessionmaker[Session] | None = None


def get_sync_engine() -> Engine:
    """Lazily create and cache the sync SQLAlchemy engine."""
    global _sync_engine
    if _sync_engine is None:
        _sync_engine = create_engine(
            settings.database_url_sync,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
        )
    return _sync_engine


def get_sync_session_factory() -> sessionmaker[Session]:
    """Lazily create and cache the sync session factory."""
    global _sync_session_factory
    if _sync_session_factory is None:
        _sync_session_factory = sessionmaker(
            bind=get_sync_engine(),
            class_=Session,
            expire_on_commit=False,
        )
    return _sync_session_factory


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """
    Context manager that provides a sync database session.

    Usage in Celery tasks:
        with get_sync_session() as session:
            article = session.get(NewsArticle, article_id)
            # Auto-commits on exit, auto-rollbacks on exception
    """
    factory = get_sync_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_schema(engine: Engine | None = None) -> None:
    """
    Enable pgvector and create all tables and indexes if missing.

    Idempotent; safe to run on every worker start.
    """
    engine = engine or get_sync_engine()
    with engine.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
        Base.metadata.create_all(bind=conn)


async def dispose_engines() -> None:
    """Close both connection pools (application shutdown)."""
    global _async_engine, _async_session_factory, _sync_engine, _sync_session_factory
    if _async_engine is not None:
        await _async_engine.dispose()
    if _sync_engine is not None:
        _sync_engine.dispose()
    _async_engine = _async_session_factory = None
    _sync_engine = _sync_session_factory = None
