"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory via a static pool)
- Table definitions for the entitlement store and billing event log
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, JSON, Text, Index, UniqueConstraint, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from backend.core.config import settings

logger = logging.getLogger("ecoscore.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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


def build_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the backend behind ``url``."""
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so in-memory databases survive across sessions
            return create_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        # File databases: a connection per session; writers wait on the file lock
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=False,  # Set to True for SQL query logging
    )


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

    if _engine is not None:
        _engine.dispose()

    _engine = build_engine(url)

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

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


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception:
        logger.warning("Database connection check failed", exc_info=True)
        return False


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from the database to aware UTC.

    SQLite drops tzinfo on the way out; every timestamp we write is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Entitlements: one row per user, mutated only by the state machine
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('subscription_status', String(20), nullable=False, server_default='none'),
    Column('plan', String(50), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('provider_subscription_id', String(100), nullable=True, unique=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('provider_variant_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_entitlements_subscription_id', 'provider_subscription_id'),
    Index('idx_entitlements_tier_status', 'tier', 'subscription_status'),
)

# Quota counters: one row per (user, resource type), created lazily
quota_counters = Table(
    'quota_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('resource_type', String(50), nullable=False),
    Column('period_kind', String(20), nullable=False),
    Column('used', Integer, nullable=False, server_default='0'),
    Column('quota_limit', Integer, nullable=False),  # -1 = unlimited
    Column('period_reset_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'resource_type', name='uq_quota_counters_user_resource'),
    Index('idx_quota_counters_user', 'user_id'),
)

# Billing events (webhook idempotency log)
billing_events = Table(
    'billing_events',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('event_type', String(100), nullable=False, index=True),
    Column('processed_at', DateTime(timezone=True), nullable=False),
    Column('outcome', JSON, nullable=True),
    Index('idx_billing_events_processed_at', 'processed_at'),
)

# Failed billing event dispatches, kept for operator reconciliation
billing_event_failures = Table(
    'billing_event_failures',
    metadata,
    Column('event_id', String(255), primary_key=True),
    Column('event_type', String(100), nullable=False),
    Column('error_code', String(100), nullable=False),
    Column('error_message', Text, nullable=True),
    Column('attempts', Integer, nullable=False, server_default='1'),
    Column('first_seen_at', DateTime(timezone=True), nullable=False),
    Column('last_seen_at', DateTime(timezone=True), nullable=False),
    Index('idx_billing_event_failures_last_seen', 'last_seen_at'),
)

# Payment and refund log derived from billing events
payment_logs = Table(
    'payment_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('event_id', String(255), nullable=False),
    Column('subscription_id', String(100), nullable=True),
    Column('order_id', String(100), nullable=True),
    Column('amount', Integer, nullable=True),  # minor units
    Column('currency', String(10), nullable=True),
    Column('status', String(20), nullable=False),  # success, failed, refunded
    Column('invoice_url', Text, nullable=True),
    Column('error', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_payment_logs_user_created', 'user_id', 'created_at'),
)
