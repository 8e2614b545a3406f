"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite files are accepted for local runs)
- Table definitions for users, usage counters, content and billing state
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text,
    Index, ForeignKey, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging

from letterbox.core.config import settings

logger = logging.getLogger(__name__)


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
    Get the database URL from settings.

    For testing, TEST_DATABASE_URL wins when set.
    """
    return settings.TEST_DATABASE_URL or settings.DATABASE_URL


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

    if url.startswith("sqlite"):
        # Single file, shared between threads in tests
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
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

    Commits when the block exits normally, rolls back on any exception.

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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Users
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('plan', String(20), nullable=False, server_default='free'),  # 'free' | 'pro'
    Column('pro_expires_at', DateTime(timezone=True), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint("plan IN ('free', 'pro')", name='ck_app_users_plan'),
    Index('idx_users_plan_expires', 'plan', 'pro_expires_at'),
)

# Usage counters: one row per user, only ever mutated by conditional UPDATEs
usage_counters = Table(
    'usage_counters',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('total_stored', Integer, nullable=False, server_default='0'),
    Column('unlocked_stored', Integer, nullable=False, server_default='0'),
    Column('locked_stored', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('total_stored = unlocked_stored + locked_stored', name='ck_usage_counters_sum'),
    CheckConstraint('unlocked_stored >= 0 AND locked_stored >= 0', name='ck_usage_counters_non_negative'),
)

# Shared content pool: one row per normalized content hash
shared_contents = Table(
    'shared_contents',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('content_hash', String(64), nullable=False),
    Column('blob_key', String(500), nullable=False),
    Column('subject', Text, nullable=False),
    Column('sender_email', String(320), nullable=False),
    Column('sender_name', Text, nullable=True),
    Column('first_received_at', DateTime(timezone=True), nullable=False),
    Column('reader_count', Integer, nullable=False, server_default='1'),
    Column('summary', Text, nullable=True),
    Column('summary_generated_at', DateTime(timezone=True), nullable=True),
    Column('is_hidden', Boolean, nullable=False, server_default='false'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('content_hash', name='uq_shared_contents_hash'),
    CheckConstraint('reader_count >= 1', name='ck_shared_contents_reader_count'),
)

# Per-user newsletter pointers
user_items = Table(
    'user_items',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('sender_id', String(100), nullable=False),
    Column('folder_id', String(100), nullable=True),
    Column('subject', Text, nullable=False),
    Column('sender_email', String(320), nullable=False),
    Column('sender_name', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), nullable=False),
    Column('is_private', Boolean, nullable=False),
    Column('shared_content_id', String(36), ForeignKey('shared_contents.id'), nullable=True),
    Column('private_blob_key', String(500), nullable=True),
    Column('content_hash', String(64), nullable=False),
    Column('message_id', String(998), nullable=True),
    Column('source', String(20), nullable=False),
    Column('is_locked_by_plan', Boolean, nullable=False, server_default='false'),
    Column('summary', Text, nullable=True),
    Column('summary_generated_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint(
        '(shared_content_id IS NULL) <> (private_blob_key IS NULL)',
        name='ck_user_items_one_content_pointer',
    ),
    UniqueConstraint('user_id', 'content_hash', name='uq_user_items_user_hash'),
    UniqueConstraint('user_id', 'message_id', name='uq_user_items_user_message'),
    Index('idx_user_items_user_received', 'user_id', 'received_at'),
    Index('idx_user_items_user_locked', 'user_id', 'is_locked_by_plan'),
    Index('idx_user_items_shared_content', 'shared_content_id'),
)

# Daily AI generation counters, bucketed by UTC day (YYYY-MM-DD)
ai_usage_daily = Table(
    'ai_usage_daily',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('day', String(10), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'day', name='uq_ai_usage_daily_user_day'),
)

# Single-flight locks for AI generation (one row per held lock)
ai_generation_locks = Table(
    'ai_generation_locks',
    metadata,
    Column('lock_key', String(200), primary_key=True),
    Column('owner_token', String(36), nullable=False),
    Column('acquired_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
)

# Webhook ledger: write-once, existence is the idempotency gate
billing_webhook_events = Table(
    'billing_webhook_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(255), nullable=False),
    Column('event_type', String(100), nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('event_id', name='uq_billing_webhook_events_event_id'),
    Index('idx_billing_webhook_events_received_at', 'received_at'),
)
