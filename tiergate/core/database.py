"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file databases)
- Table definitions for the subscription schema contract
"""
import logging
import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    Date,
    DateTime,
    JSON,
    Numeric,
    Text,
    Index,
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func

from tiergate.core.config import settings


logger = logging.getLogger("tiergate.database")

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
        # SQLite ignores pool sizing; allow the session to hop threads (TestClient)
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
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
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine so the next call re-reads the URL."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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


def get_dialect_name() -> str:
    return get_engine().dialect.name


def get_dialect_insert():
    """insert() construct supporting on_conflict_do_update for the active dialect."""
    dialect = get_dialect_name()
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ValueError(f"Upserts are not supported on dialect: {dialect}")


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit, rolls back and re-raises on error.

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


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


TIER_VALUES = ("momentum", "accelerate", "elite")
BILLING_PERIOD_VALUES = ("monthly", "quarterly", "yearly")
STATUS_VALUES = ("active", "cancelled", "past_due", "expired")


def _in_list(column: str, values, nullable: bool) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    clause = f"{column} IN ({quoted})"
    return f"{column} IS NULL OR {clause}" if nullable else clause


# One row per user. tier IS NULL marks a tracking-only user.
user_subscriptions = Table(
    'user_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('tier', String(20), nullable=True),
    Column('billing_period', String(20), nullable=True),
    Column('status', String(20), nullable=False, server_default='active'),
    # Grow payment references
    Column('grow_transaction_token', Text, nullable=True),
    Column('grow_recurring_id', Text, nullable=True),
    Column('grow_last_transaction_code', Text, nullable=True),
    # Morning invoicing reference
    Column('morning_customer_id', Text, nullable=True),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('cancellation_effective_at', DateTime(timezone=True), nullable=True),
    # Applied at next renewal
    Column('scheduled_tier_change', String(20), nullable=True),
    Column('scheduled_billing_period_change', String(20), nullable=True),
    # Usage counters: reset on activation and renewal, never on upgrade
    Column('usage_applications', Integer, nullable=False, server_default='0'),
    Column('usage_cvs', Integer, nullable=False, server_default='0'),
    Column('usage_interviews', Integer, nullable=False, server_default='0'),
    Column('usage_compensation', Integer, nullable=False, server_default='0'),
    Column('usage_contracts', Integer, nullable=False, server_default='0'),
    Column('usage_ai_avatar_interviews', Integer, nullable=False, server_default='0'),
    # Updated only when counters are zeroed
    Column('last_reset_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', name='user_subscriptions_user_id_key'),
    CheckConstraint(_in_list('tier', TIER_VALUES, nullable=True), name='ck_user_subscriptions_tier'),
    CheckConstraint(_in_list('billing_period', BILLING_PERIOD_VALUES, nullable=True), name='ck_user_subscriptions_billing_period'),
    CheckConstraint(_in_list('status', STATUS_VALUES, nullable=False), name='ck_user_subscriptions_status'),
    Index('idx_user_subscriptions_status', 'status'),
    Index('idx_user_subscriptions_tier', 'tier'),
    Index('idx_user_subscriptions_period_end', 'current_period_end'),
)

# Permanent monthly history. month is always the first day of the month.
usage_monthly_snapshots = Table(
    'usage_monthly_snapshots',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('month', Date, nullable=False),
    Column('applications', Integer, nullable=False, server_default='0'),
    Column('cvs', Integer, nullable=False, server_default='0'),
    Column('interviews', Integer, nullable=False, server_default='0'),
    Column('compensation', Integer, nullable=False, server_default='0'),
    Column('contracts', Integer, nullable=False, server_default='0'),
    Column('ai_avatar_interviews', Integer, nullable=False, server_default='0'),
    Column('tier_at_snapshot', String(20), nullable=True),
    Column('billing_period_at_snapshot', String(20), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'month', name='usage_monthly_snapshots_user_month_key'),
    Index('idx_usage_monthly_snapshots_user_month', 'user_id', 'month'),
)

# Append-only lifecycle audit trail. Nothing in the codebase updates these rows.
subscription_events = Table(
    'subscription_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('event_type', String(50), nullable=False),
    Column('previous_tier', String(20), nullable=True),
    Column('new_tier', String(20), nullable=True),
    Column('previous_billing_period', String(20), nullable=True),
    Column('new_billing_period', String(20), nullable=True),
    Column('amount', Numeric(10, 2), nullable=True),
    Column('currency', String(3), nullable=True),
    Column('metadata', JSON, nullable=False, default=dict),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_subscription_events_user_created', 'user_id', 'created_at'),
    Index('idx_subscription_events_event_type', 'event_type'),
)
