"""
Credit consumption.

One generic decrement over the lot list from load_lots(). Each candidate is
claimed with a conditional UPDATE; a lot that lost a race (rowcount 0) is
skipped and the next one tried.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from resumeledger.core.database import addon_credits, get_db_session, subscriptions, utc_now
from resumeledger.core.errors import NoCreditsRemaining, ValidationError
from resumeledger.core.metrics import credits_consumed_total
from resumeledger.features.catalog.service import UNLIMITED, ResourceKind
from resumeledger.features.credits.service import (
    AddOnLot,
    CreditLot,
    total_column,
    used_column,
    aggregate,
    load_lots,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumeResult:
    success: bool
    kind: ResourceKind
    source: str
    lot_id: str
    remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "kind": self.kind.value,
            "source": self.source,
            "lot_id": self.lot_id,
            "remaining": self.remaining,
            "unlimited": self.remaining == UNLIMITED,
        }


def _claim(session: Session, lot: CreditLot, kind: ResourceKind, now: datetime) -> bool:
    if isinstance(lot, AddOnLot):
        result = session.execute(
            update(addon_credits)
            .where(
                and_(
                    addon_credits.c.id == lot.id,
                    addon_credits.c.quantity_remaining > 0,
                )
            )
            .values(
                quantity_remaining=addon_credits.c.quantity_remaining - 1,
                updated_at=now,
            )
        )
        return result.rowcount == 1

    used = used_column(kind)
    total = total_column(kind)
    result = session.execute(
        update(subscriptions)
        .where(
            and_(
                subscriptions.c.id == lot.id,
                subscriptions.c.status != "cancelled",
                or_(total == UNLIMITED, used < total),
            )
        )
        .values({used: used + 1, subscriptions.c.updated_at: now})
    )
    return result.rowcount == 1


def consume(user_id: str, kind: Union[ResourceKind, str], now: Optional[datetime] = None) -> ConsumeResult:
    """
    Consume one unit of a resource kind.

    Add-on lots are drawn before subscriptions; within each source the lot
    closest to expiry goes first.

    Raises:
        ValidationError: Unknown resource kind
        NoCreditsRemaining: No lot has capacity (nothing is changed)
    """
    if not isinstance(kind, ResourceKind):
        try:
            kind = ResourceKind.parse(kind)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    now = now or utc_now()

    with get_db_session() as session:
        lots = load_lots(session, user_id, kind)
        for lot in lots:
            if not lot.has_capacity(kind):
                continue
            if not _claim(session, lot, kind, now):
                logger.info(
                    "credits.claim_lost",
                    extra={"event_type": "credits.claim_lost", "user_id": user_id},
                )
                continue
            remaining = aggregate(user_id, load_lots(session, user_id)).remaining(kind)
            credits_consumed_total.inc(labels={"kind": kind.value, "source": lot.source})
            logger.info(
                "credits.consumed",
                extra={"event_type": "credits.consumed", "user_id": user_id},
            )
            return ConsumeResult(
                success=True,
                kind=kind,
                source=lot.source,
                lot_id=lot.id,
                remaining=remaining,
            )

    raise NoCreditsRemaining(f"No {kind.value} credits remaining")
