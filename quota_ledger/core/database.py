"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (SQLite gets thread-shareable connections)
- Test database support
- Table definitions for counters, purchase ledger, transaction log and plan overrides
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    JSON,
    Text,
    Index,
    CheckConstraint,
    PrimaryKeyConstraint,
    UniqueConstraint,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from quota_ledger.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    logger.info("Database engine initialized (dialect=%s)", _engine.dialect.name)
    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Drop the cached engine (tests switch databases with this)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Everything executed inside the block commits together, or not at all.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Per-(user, dimension) quota counters. `generation` increases on every
# window reset and is the compare-and-swap token for increments.
quota_counters = Table(
    'quota_counters',
    metadata,
    Column('user_id', String(128), nullable=False),
    Column('dimension', String(50), nullable=False),
    Column('used', Integer, nullable=False, server_default='0'),
    Column('last_reset', DateTime(timezone=True), nullable=False),
    Column('generation', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'dimension', name='pk_quota_counters'),
    CheckConstraint('used >= 0', name='ck_quota_counters_used_non_negative'),
)

# Purchased credit balances, one row per (user, dimension)
purchase_balances = Table(
    'purchase_balances',
    metadata,
    Column('user_id', String(128), nullable=False),
    Column('dimension', String(50), nullable=False),
    Column('balance', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'dimension', name='pk_purchase_balances'),
    CheckConstraint('balance >= 0', name='ck_purchase_balances_non_negative'),
)

# Payment records (and direct-credit idempotency keys) already applied to a ledger
applied_payments = Table(
    'applied_payments',
    metadata,
    Column('user_id', String(128), nullable=False),
    Column('payment_id', String(255), nullable=False),
    Column('applied_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'payment_id', name='pk_applied_payments'),
)

# Grant/purchase log. Rows are never edited except the `replays` counter.
quota_transactions = Table(
    'quota_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(128), nullable=False),
    Column('kind', String(20), nullable=False),  # 'purchase' | 'usage'
    Column('source', String(20), nullable=False),  # 'plan' | 'ledger' | 'payment' | 'admin'
    Column('deltas', JSON, nullable=False),
    Column('payment_id', String(255), nullable=True),
    Column('grant_id', String(64), nullable=True),
    Column('replays', Integer, nullable=False, server_default='0'),  # echoes served for grant_id
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'grant_id', name='uq_quota_transactions_user_grant'),
    # Audit listing pattern: (user_id, occurred_at)
    Index('idx_quota_transactions_user_occurred', 'user_id', 'occurred_at'),
)

# Users pinned to a plan regardless of subscription state
plan_overrides = Table(
    'plan_overrides',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('plan', String(50), nullable=False),
    Column('reason', Text, nullable=True),
    Column('created_by', String(128), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

REQUIRED_TABLES = [table.name for table in metadata.sorted_tables]
