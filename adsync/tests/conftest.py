"""Pytest configuration for adsync integration tests

WHAT: Shared fixtures for queue, worker, rollover and HTTP tests
WHY: Every test gets its own SQLite database file, so sessions opened by the
     worker (one per job) see the same data as the test session
REFERENCES:
    - adsync/models.py: Schema
    - adsync/services/sync_worker.py: Session-per-job worker
    - adsync/main.py: FastAPI application
"""

import os
import sys
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure the project root is in path
PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Set test environment
# Must be URL-safe base64-encoded 32-byte string (adsync.security validates it)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """File-backed SQLite engine (shared by every session of a test)."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'adsync.db'}",
        connect_args={"check_same_thread": False},
    )

    from adsync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def settings():
    """Settings with defaults, isolated from any local .env."""
    from adsync.deps import Settings

    return Settings(_env_file=None)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_brand(test_db_session):
    from adsync.tests.factories import make_brand

    return make_brand(test_db_session)


@pytest.fixture
def test_connection(test_db_session, test_brand):
    from adsync.tests.factories import make_connection

    return make_connection(test_db_session, test_brand)


@pytest.fixture
def fake_client():
    from adsync.tests.factories import FakeInsightsClient

    return FakeInsightsClient()


# ============================================================================
# Cleanup Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def reset_data_changed_listeners():
    """Listeners are process-global; keep tests independent."""
    from adsync.services import data_changed

    data_changed.clear_listeners()
    yield
    data_changed.clear_listeners()


@pytest.fixture(autouse=True)
def reset_client_rate_limits():
    from adsync.services import meta_insights_client

    meta_insights_client._rate_limit_call_times.clear()
    yield
    meta_insights_client._rate_limit_call_times.clear()
