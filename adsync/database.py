"""Database engine and session configuration.

WHAT:
    Builds the SQLAlchemy engine from DATABASE_URL and exposes the session
    factory used by the API, the arq worker and the sync services.

WHY:
    - Workers open one session per job (thread) and close it when done
    - The queue, the upsert layer and the rollover ledger all rely on the same
      transactional store, so there is exactly one engine per process

USAGE:
    from adsync.database import SessionLocal, get_db, session_scope

    with session_scope() as db:
        JobQueue(db).get_stats()

REFERENCES:
    - adsync/models.py (Base and tables)
    - alembic/versions/ (schema migrations)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from adsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Export it or add it to a local .env file."
        )

    # Heroku-style URLs are rejected by SQLAlchemy 2
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# SQLite engines (tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # one connection per concurrent job
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in adsync.models to keep a single registry
from .models import Base  # noqa: E402,F401


# =============================================================================
# SESSION HELPERS
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for background jobs; rolls back on error and always closes.

    Example:
        with session_scope() as db:
            RolloverManager(db).run_for_brand(brand_id)
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
