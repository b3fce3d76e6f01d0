"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (server databases only)
- Test database support
- Ledger table definitions
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
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
    UniqueConstraint,
    CheckConstraint,
    inspect,
    text,
)
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
import os

from resumeledger.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
STATEMENT_TIMEOUT_MS = 10000

# Global engine and session factory
_engine = None
_SessionLocal = None


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp (SQLite returns naive values) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


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

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": POOL_TIMEOUT},
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
            connect_args={"options": f"-c statement_timeout={STATEMENT_TIMEOUT_MS}"},
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next access re-reads the database URL."""
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


@contextmanager
def get_db_session():
    """
    One unit of work: commits on normal exit, rolls back and re-raises on error.

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
    """Return True if the database answers a trivial query."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def missing_tables() -> list[str]:
    """Ledger tables that are not present in the connected database."""
    present = set(inspect(get_engine()).get_table_names())
    return [name for name in metadata.tables if name not in present]


# Payment transactions (order -> payment -> verification state machine)
payment_transactions = Table(
    'payment_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(50), nullable=True),  # NULL for add-on only purchases
    Column('status', String(20), nullable=False),  # pending, success, failed
    Column('currency', String(3), nullable=False),
    Column('original_amount', Integer, nullable=False),
    Column('discount_amount', Integer, nullable=False, default=0),
    Column('wallet_deduction_amount', Integer, nullable=False, default=0),
    Column('addons_total', Integer, nullable=False, default=0),
    Column('final_amount', Integer, nullable=False),
    Column('coupon_code', String(50), nullable=True),
    Column('addons', JSON, nullable=True),  # {addon_id: quantity}
    Column('catalog_version', String(50), nullable=True),
    Column('provider_order_id', String(100), nullable=True, unique=True),
    Column('provider_payment_id', String(100), nullable=True, unique=True),
    Column('subscription_id', String(36), nullable=True),
    Column('failure_reason', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, default=utc_now),
    Column('updated_at', DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now),
    Column('settled_at', DateTime(timezone=True), nullable=True),
    CheckConstraint("status IN ('pending', 'success', 'failed')", name='ck_payment_transactions_status'),
    CheckConstraint('final_amount >= 0', name='ck_payment_transactions_final_amount'),
    Index('idx_payment_transactions_user_created', 'user_id', 'created_at'),
    Index('idx_payment_transactions_user_coupon', 'user_id', 'coupon_code'),
    Index('idx_payment_transactions_status_created', 'status', 'created_at'),
)

# Subscription credit lots (plan-scoped)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(20), nullable=False),  # active, expired, cancelled
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('transaction_id', String(36), nullable=True, unique=True),
    Column('coupon_used', String(50), nullable=True),
    # -1 totals mean unlimited
    Column('optimizations_used', Integer, nullable=False, default=0),
    Column('optimizations_total', Integer, nullable=False, default=0),
    Column('score_checks_used', Integer, nullable=False, default=0),
    Column('score_checks_total', Integer, nullable=False, default=0),
    Column('linkedin_messages_used', Integer, nullable=False, default=0),
    Column('linkedin_messages_total', Integer, nullable=False, default=0),
    Column('guided_builds_used', Integer, nullable=False, default=0),
    Column('guided_builds_total', Integer, nullable=False, default=0),
    Column('created_at', DateTime(timezone=True), nullable=False, default=utc_now),
    Column('updated_at', DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now),
    CheckConstraint("status IN ('active', 'expired', 'cancelled')", name='ck_subscriptions_status'),
    CheckConstraint('optimizations_total = -1 OR optimizations_used <= optimizations_total', name='ck_subscriptions_optimizations'),
    CheckConstraint('score_checks_total = -1 OR score_checks_used <= score_checks_total', name='ck_subscriptions_score_checks'),
    CheckConstraint('linkedin_messages_total = -1 OR linkedin_messages_used <= linkedin_messages_total', name='ck_subscriptions_linkedin_messages'),
    CheckConstraint('guided_builds_total = -1 OR guided_builds_used <= guided_builds_total', name='ck_subscriptions_guided_builds'),
    Index('idx_subscriptions_user_status_end', 'user_id', 'status', 'end_date'),
)

# Add-on credit lots (perpetual until exhausted)
addon_credits = Table(
    'addon_credits',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('addon_id', String(50), nullable=False),
    Column('resource_kind', String(30), nullable=False),
    Column('quantity_purchased', Integer, nullable=False),
    Column('quantity_remaining', Integer, nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('transaction_id', String(36), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, default=utc_now),
    Column('updated_at', DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now),
    CheckConstraint('quantity_remaining >= 0', name='ck_addon_credits_remaining_nonneg'),
    CheckConstraint('quantity_remaining <= quantity_purchased', name='ck_addon_credits_remaining_le_purchased'),
    UniqueConstraint('transaction_id', 'addon_id', name='uq_addon_credits_transaction_addon'),
    Index('idx_addon_credits_user_kind', 'user_id', 'resource_kind', 'quantity_remaining'),
)

# Wallet ledger (signed amounts in minor units)
wallet_transactions = Table(
    'wallet_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('type', String(30), nullable=False),  # purchase_use, top_up
    Column('amount', Integer, nullable=False),
    Column('status', String(20), nullable=False),  # completed, reversed
    Column('transaction_ref', String(100), nullable=True),
    Column('details', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False, default=utc_now),
    UniqueConstraint('transaction_ref', 'type', name='uq_wallet_transactions_ref_type'),
    Index('idx_wallet_transactions_user_status', 'user_id', 'status'),
)

# Coupon redemptions: race backstop for single-use coupons
coupon_redemptions = Table(
    'coupon_redemptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('coupon_code', String(50), nullable=False),
    Column('transaction_id', String(36), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False, default=utc_now),
    UniqueConstraint('user_id', 'coupon_code', name='uq_coupon_redemptions_user_code'),
)
