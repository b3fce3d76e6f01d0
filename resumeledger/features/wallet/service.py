"""
Wallet ledger.

Signed entries in minor units. The wallet only offsets plan prices at
checkout; it never grants resource credits.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, insert, select
from sqlalchemy.orm import Session

from resumeledger.core.config import settings
from resumeledger.core.database import (
    get_db_session,
    payment_transactions,
    utc_now,
    wallet_transactions,
)
from resumeledger.core.errors import TransactionStateError, ValidationError

logger = logging.getLogger(__name__)

COMPLETED = "completed"


def _completed_sum(session: Session, user_id: str) -> int:
    total = session.execute(
        select(func.coalesce(func.sum(wallet_transactions.c.amount), 0)).where(
            and_(
                wallet_transactions.c.user_id == user_id,
                wallet_transactions.c.status == COMPLETED,
            )
        )
    ).scalar()
    return int(total or 0)


def get_wallet_balance(user_id: str, session: Optional[Session] = None) -> int:
    """Sum of completed wallet entries for the user."""
    if session is not None:
        return _completed_sum(session, user_id)
    with get_db_session() as s:
        return _completed_sum(s, user_id)


def get_available_wallet_balance(session: Session, user_id: str, now: Optional[datetime] = None) -> int:
    """Completed balance minus amounts reserved by the user's live pending orders."""
    now = now or utc_now()
    cutoff = now - timedelta(minutes=settings.PENDING_TRANSACTION_TTL_MINUTES)
    reserved = session.execute(
        select(func.coalesce(func.sum(payment_transactions.c.wallet_deduction_amount), 0)).where(
            and_(
                payment_transactions.c.user_id == user_id,
                payment_transactions.c.status == "pending",
                payment_transactions.c.created_at >= cutoff,
            )
        )
    ).scalar()
    return max(0, _completed_sum(session, user_id) - int(reserved or 0))


def _lock_wallet(session: Session, user_id: str) -> None:
    # Row locks serialize concurrent debits on Postgres; SQLite ignores FOR UPDATE
    # and already serializes writers
    session.execute(
        select(wallet_transactions.c.id)
        .where(
            and_(
                wallet_transactions.c.user_id == user_id,
                wallet_transactions.c.status == COMPLETED,
            )
        )
        .with_for_update()
    ).fetchall()


def record_wallet_debit(
    session: Session,
    user_id: str,
    amount: int,
    transaction_id: str,
    details: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Record a purchase_use debit for a settled transaction (one per transaction).

    The user's completed entries are locked before the balance is checked, so
    two settlements cannot both spend the same funds.

    Raises:
        ValidationError: Non-positive amount
        TransactionStateError: Completed balance no longer covers the debit
    """
    if amount <= 0:
        raise ValidationError("Wallet debit amount must be positive")
    _lock_wallet(session, user_id)
    if _completed_sum(session, user_id) < amount:
        raise TransactionStateError("Wallet balance no longer covers the reserved deduction")
    entry_id = str(uuid.uuid4())
    session.execute(
        insert(wallet_transactions).values(
            id=entry_id,
            user_id=user_id,
            type="purchase_use",
            amount=-int(amount),
            status=COMPLETED,
            transaction_ref=transaction_id,
            details=details or {},
            created_at=utc_now(),
        )
    )
    return entry_id


def credit_wallet(user_id: str, amount: int, reason: str, reference: Optional[str] = None) -> Dict[str, Any]:
    """Add a positive top_up entry (admin adjustments, referral payouts)."""
    if amount <= 0:
        raise ValidationError("Wallet credit amount must be positive")
    entry_id = str(uuid.uuid4())
    with get_db_session() as session:
        session.execute(
            insert(wallet_transactions).values(
                id=entry_id,
                user_id=user_id,
                type="top_up",
                amount=int(amount),
                status=COMPLETED,
                transaction_ref=reference,
                details={"reason": reason},
                created_at=utc_now(),
            )
        )
        balance = _completed_sum(session, user_id)
    logger.info(
        "wallet.credited",
        extra={"event_type": "wallet.credited", "user_id": user_id},
    )
    return {"entry_id": entry_id, "balance": balance}


def list_wallet_entries(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(wallet_transactions)
            .where(wallet_transactions.c.user_id == user_id)
            .order_by(wallet_transactions.c.created_at.desc())
            .limit(limit)
        ).fetchall()
    return [
        {
            "id": r.id,
            "type": r.type,
            "amount": r.amount,
            "status": r.status,
            "transaction_ref": r.transaction_ref,
            "created_at": r.created_at,
        }
        for r in rows
    ]
