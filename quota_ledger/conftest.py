# quota_ledger/conftest.py
import os
import tempfile
from pathlib import Path

import pytest

# Every test session gets its own SQLite file unless TEST_DATABASE_URL points
# at a real server. Must be set before quota_ledger.core.database is imported.
if not os.getenv("TEST_DATABASE_URL"):
    _db_dir = tempfile.mkdtemp(prefix="quota_ledger_tests_")
    os.environ["TEST_DATABASE_URL"] = f"sqlite:///{Path(_db_dir) / 'quota.db'}"


@pytest.fixture(scope="session")
def db_url():
    """URL of the database the suite runs against."""
    return os.environ["TEST_DATABASE_URL"]


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Create all tables once per session."""
    from quota_ledger.core.database import create_all_tables, dispose_engine

    create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Empty every quota table before each test."""
    from sqlalchemy import delete
    from quota_ledger.core.database import get_db_session, metadata

    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(delete(table))
    yield


@pytest.fixture(scope="function", autouse=True)
def test_settings(monkeypatch):
    """
    Deterministic settings for every test: no backoff sleeps, UTC day
    boundaries, no Stripe, no admin key unless a test sets one.
    """
    from quota_ledger.core.config import settings
    from quota_ledger.features.plans.catalog import reset_catalog_cache

    monkeypatch.setattr(settings, "STORE_RETRY_MIN_WAIT_SECONDS", 0)
    monkeypatch.setattr(settings, "STORE_RETRY_MAX_WAIT_SECONDS", 0)
    monkeypatch.setattr(settings, "STORE_RETRY_ATTEMPTS", 3)
    monkeypatch.setattr(settings, "GATE_GRANT_REPLAY_SECONDS", 300)
    monkeypatch.setattr(settings, "GATE_MAX_GRANT_REPLAYS", 3)
    monkeypatch.setattr(settings, "QUOTA_RESET_TIMEZONE", "UTC")
    monkeypatch.setattr(settings, "PLAN_LIMITS_FILE", None)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    reset_catalog_cache()
    yield settings
    reset_catalog_cache()
