"""
Stale-pending sweep.

Pending transactions older than the TTL are moved to failed so abandoned
checkouts never linger. Runs from the admin endpoint and the sweep worker.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import and_, select, update

from resumeledger.core.config import settings
from resumeledger.core.database import get_db_session, payment_transactions, utc_now
from resumeledger.core.logging import log_event
from resumeledger.core.metrics import pending_swept_total

EXPIRED_PENDING = "expired_pending"


def run_reconcile_job(
    now: Optional[datetime] = None,
    fix: bool = True,
    ttl_minutes: Optional[int] = None,
    limit: int = 500,
) -> Dict[str, Any]:
    now = now or utc_now()
    ttl = ttl_minutes if ttl_minutes is not None else settings.PENDING_TRANSACTION_TTL_MINUTES
    cutoff = now - timedelta(minutes=ttl)
    corrections = 0

    with get_db_session() as session:
        stale = session.execute(
            select(payment_transactions.c.id, payment_transactions.c.user_id)
            .where(
                and_(
                    payment_transactions.c.status == "pending",
                    payment_transactions.c.created_at < cutoff,
                )
            )
            .order_by(payment_transactions.c.created_at.asc())
            .limit(limit)
        ).fetchall()

        if fix:
            for tx in stale:
                # Guarded so a settlement that lands mid-sweep wins
                result = session.execute(
                    update(payment_transactions)
                    .where(
                        and_(
                            payment_transactions.c.id == tx.id,
                            payment_transactions.c.status == "pending",
                        )
                    )
                    .values(status="failed", failure_reason=EXPIRED_PENDING, updated_at=now)
                )
                corrections += result.rowcount

    if corrections:
        pending_swept_total.inc(amount=corrections)
    log_event(
        "info",
        "reconcile.completed",
        event_type="reconcile.completed",
        extra={"issues_found": len(stale), "corrections_applied": corrections, "fix": fix},
    )
    return {
        "issues_found": len(stale),
        "corrections_applied": corrections,
        "stale_transaction_ids": [tx.id for tx in stale],
        "cutoff": cutoff.isoformat(),
        "timestamp": now.isoformat(),
    }
