"""
Credit grant and aggregation.

Credits live in two kinds of lots:
- subscriptions: plan-scoped, one row per purchase, per-kind used/total counters
- addon_credits: one row per purchased add-on, a single remaining counter

Reads go through load_lots(), which returns both kinds as one ordered list
(the order consumption walks). Plan end dates are informational: granted
units stay usable until consumed.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Union

from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from resumeledger.core.database import (
    addon_credits,
    as_utc,
    get_db_session,
    payment_transactions,
    subscriptions,
    utc_now,
)
from resumeledger.core.errors import NotFoundError, UnknownAddOn, UnknownPlan
from resumeledger.features.catalog.service import UNLIMITED, Catalog, ResourceKind, get_catalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionLot:
    source: ClassVar[str] = "subscription"

    id: str
    plan_id: str
    status: str
    start_date: datetime
    end_date: datetime
    used: Mapping[ResourceKind, int]
    total: Mapping[ResourceKind, int]

    def remaining(self, kind: ResourceKind) -> int:
        total = self.total.get(kind, 0)
        if total == UNLIMITED:
            return UNLIMITED
        return max(0, total - self.used.get(kind, 0))

    def has_capacity(self, kind: ResourceKind) -> bool:
        remaining = self.remaining(kind)
        return remaining == UNLIMITED or remaining > 0


@dataclass(frozen=True)
class AddOnLot:
    source: ClassVar[str] = "addon"

    id: str
    addon_id: str
    kind: ResourceKind
    purchased: int
    remaining_units: int
    expires_at: Optional[datetime]
    created_at: datetime

    def remaining(self, kind: ResourceKind) -> int:
        return self.remaining_units if kind == self.kind else 0

    def has_capacity(self, kind: ResourceKind) -> bool:
        return self.remaining(kind) > 0


CreditLot = Union[SubscriptionLot, AddOnLot]


@dataclass
class KindBalance:
    used: int = 0
    total: int = 0
    remaining: int = 0
    unlimited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "used": self.used,
            "total": UNLIMITED if self.unlimited else self.total,
            "remaining": UNLIMITED if self.unlimited else self.remaining,
            "unlimited": self.unlimited,
        }


@dataclass
class Balance:
    user_id: str
    kinds: Dict[ResourceKind, KindBalance] = field(default_factory=dict)

    @property
    def status(self) -> str:
        for kb in self.kinds.values():
            if kb.unlimited or kb.remaining > 0:
                return "active"
        return "inactive"

    def remaining(self, kind: ResourceKind) -> int:
        kb = self.kinds[kind]
        return UNLIMITED if kb.unlimited else kb.remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "credits": {kind.value: kb.to_dict() for kind, kb in self.kinds.items()},
        }


@dataclass
class CreditGrant:
    transaction_id: str
    subscription_id: Optional[str]
    addon_lot_ids: List[str]
    granted: Dict[ResourceKind, int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "addon_lot_ids": list(self.addon_lot_ids),
            "credits_granted": {kind.value: qty for kind, qty in self.granted.items() if qty},
        }


def used_column(kind: ResourceKind):
    return subscriptions.c[f"{kind.column_prefix}_used"]


def total_column(kind: ResourceKind):
    return subscriptions.c[f"{kind.column_prefix}_total"]


def _add_granted(granted: Dict[ResourceKind, int], kind: ResourceKind, qty: int) -> None:
    current = granted.get(kind, 0)
    if current == UNLIMITED or qty == UNLIMITED:
        granted[kind] = UNLIMITED
    else:
        granted[kind] = current + qty


def _subscription_lot(row) -> SubscriptionLot:
    return SubscriptionLot(
        id=row.id,
        plan_id=row.plan_id,
        status=row.status,
        start_date=as_utc(row.start_date),
        end_date=as_utc(row.end_date),
        used={kind: getattr(row, f"{kind.column_prefix}_used") for kind in ResourceKind},
        total={kind: getattr(row, f"{kind.column_prefix}_total") for kind in ResourceKind},
    )


def _addon_lot(row) -> AddOnLot:
    return AddOnLot(
        id=row.id,
        addon_id=row.addon_id,
        kind=ResourceKind(row.resource_kind),
        purchased=row.quantity_purchased,
        remaining_units=row.quantity_remaining,
        expires_at=as_utc(row.expires_at),
        created_at=as_utc(row.created_at),
    )


def load_lots(session: Session, user_id: str, kind: Optional[ResourceKind] = None) -> List[CreditLot]:
    """
    Load a user's usable credit lots in consumption order.

    Add-on lots come first (soonest expiry, lots without expiry last, then
    oldest), followed by non-cancelled subscriptions (soonest end date first).
    """
    addon_conditions = [
        addon_credits.c.user_id == user_id,
        addon_credits.c.quantity_remaining > 0,
    ]
    if kind is not None:
        addon_conditions.append(addon_credits.c.resource_kind == kind.value)
    addon_rows = session.execute(
        select(addon_credits)
        .where(and_(*addon_conditions))
        .order_by(
            addon_credits.c.expires_at.is_(None),
            addon_credits.c.expires_at.asc(),
            addon_credits.c.created_at.asc(),
            addon_credits.c.id.asc(),
        )
    ).fetchall()

    sub_rows = session.execute(
        select(subscriptions)
        .where(
            and_(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status != "cancelled",
            )
        )
        .order_by(
            subscriptions.c.end_date.asc(),
            subscriptions.c.created_at.asc(),
            subscriptions.c.id.asc(),
        )
    ).fetchall()

    lots: List[CreditLot] = [_addon_lot(r) for r in addon_rows]
    lots.extend(_subscription_lot(r) for r in sub_rows)
    return lots


def aggregate(user_id: str, lots: List[CreditLot]) -> Balance:
    balance = Balance(user_id=user_id, kinds={kind: KindBalance() for kind in ResourceKind})
    for lot in lots:
        if isinstance(lot, AddOnLot):
            kb = balance.kinds[lot.kind]
            kb.total += lot.purchased
            kb.used += lot.purchased - lot.remaining_units
            kb.remaining += lot.remaining_units
            continue
        for kind in ResourceKind:
            kb = balance.kinds[kind]
            total = lot.total.get(kind, 0)
            used = lot.used.get(kind, 0)
            kb.used += used
            if total == UNLIMITED:
                kb.unlimited = True
                continue
            kb.total += total
            kb.remaining += max(0, total - used)
    return balance


def get_balance(user_id: str, session: Optional[Session] = None) -> Balance:
    """Aggregate all non-cancelled subscriptions and add-on lots with units left."""
    if session is not None:
        return aggregate(user_id, load_lots(session, user_id))
    with get_db_session() as s:
        return aggregate(user_id, load_lots(s, user_id))


def grant_credits(
    session: Session,
    transaction_row,
    *,
    catalog: Optional[Catalog] = None,
    now: Optional[datetime] = None,
) -> CreditGrant:
    """
    Apply a settled transaction's plan and add-ons to the ledger.

    Runs inside the caller's settlement unit. The unique transaction_id on
    subscriptions and (transaction_id, addon_id) on add-on lots reject a
    second grant for the same transaction.
    """
    catalog = catalog or get_catalog()
    now = now or utc_now()
    granted: Dict[ResourceKind, int] = {}
    subscription_id = None

    if transaction_row.plan_id:
        plan = catalog.get_plan(transaction_row.plan_id)
        if plan is None:
            raise UnknownPlan(f"Unknown plan: {transaction_row.plan_id}")
        subscription_id = str(uuid.uuid4())
        values: Dict[str, Any] = {
            "id": subscription_id,
            "user_id": transaction_row.user_id,
            "plan_id": plan.id,
            "status": "active",
            "start_date": now,
            "end_date": now + timedelta(hours=plan.duration_hours),
            "transaction_id": transaction_row.id,
            "coupon_used": transaction_row.coupon_code,
            "created_at": now,
            "updated_at": now,
        }
        for kind in ResourceKind:
            values[f"{kind.column_prefix}_used"] = 0
            values[f"{kind.column_prefix}_total"] = plan.quantity(kind)
            _add_granted(granted, kind, plan.quantity(kind))
        session.execute(subscriptions.insert().values(**values))
        session.execute(
            update(payment_transactions)
            .where(payment_transactions.c.id == transaction_row.id)
            .values(subscription_id=subscription_id)
        )

    addon_lot_ids: List[str] = []
    for addon_id, qty in (transaction_row.addons or {}).items():
        qty = int(qty)
        if qty <= 0:
            continue
        addon = catalog.get_addon(addon_id)
        if addon is None:
            raise UnknownAddOn(f"Unknown add-on: {addon_id}")
        units = qty * addon.quantity
        lot_id = str(uuid.uuid4())
        session.execute(
            addon_credits.insert().values(
                id=lot_id,
                user_id=transaction_row.user_id,
                addon_id=addon.id,
                resource_kind=addon.resource_kind.value,
                quantity_purchased=units,
                quantity_remaining=units,
                expires_at=None,
                transaction_id=transaction_row.id,
                created_at=now,
                updated_at=now,
            )
        )
        addon_lot_ids.append(lot_id)
        _add_granted(granted, addon.resource_kind, units)

    logger.info(
        "credits.granted",
        extra={
            "event_type": "credits.granted",
            "user_id": transaction_row.user_id,
            "transaction_id": transaction_row.id,
        },
    )
    return CreditGrant(
        transaction_id=transaction_row.id,
        subscription_id=subscription_id,
        addon_lot_ids=addon_lot_ids,
        granted=granted,
    )


def granted_for_transaction(session: Session, transaction_id: str) -> CreditGrant:
    """Rebuild what a settled transaction granted (idempotent settlement replies)."""
    granted: Dict[ResourceKind, int] = {}
    sub = session.execute(
        select(subscriptions).where(subscriptions.c.transaction_id == transaction_id)
    ).fetchone()
    if sub is not None:
        for kind in ResourceKind:
            _add_granted(granted, kind, getattr(sub, f"{kind.column_prefix}_total"))
    lots = session.execute(
        select(addon_credits)
        .where(addon_credits.c.transaction_id == transaction_id)
        .order_by(addon_credits.c.created_at.asc(), addon_credits.c.id.asc())
    ).fetchall()
    for lot in lots:
        _add_granted(granted, ResourceKind(lot.resource_kind), lot.quantity_purchased)
    return CreditGrant(
        transaction_id=transaction_id,
        subscription_id=sub.id if sub is not None else None,
        addon_lot_ids=[lot.id for lot in lots],
        granted=granted,
    )


def _subscription_to_dict(row, now: datetime) -> Dict[str, Any]:
    end_date = as_utc(row.end_date)
    return {
        "id": row.id,
        "plan_id": row.plan_id,
        "status": row.status,
        "start_date": as_utc(row.start_date),
        "end_date": end_date,
        "expired": row.status == "expired" or end_date <= now,
        "transaction_id": row.transaction_id,
        "coupon_used": row.coupon_used,
        "credits": {
            kind.value: {
                "used": getattr(row, f"{kind.column_prefix}_used"),
                "total": getattr(row, f"{kind.column_prefix}_total"),
            }
            for kind in ResourceKind
        },
    }


def list_subscriptions(user_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Subscription history, newest first."""
    now = now or utc_now()
    with get_db_session() as session:
        rows = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.created_at.desc())
        ).fetchall()
    return [_subscription_to_dict(r, now) for r in rows]


def cancel_subscription(user_id: str, subscription_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Cancel a subscription lot. Its remaining units leave the balance.

    Raises:
        NotFoundError: Unknown subscription or owned by another user
    """
    now = now or utc_now()
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(
                and_(subscriptions.c.id == subscription_id, subscriptions.c.user_id == user_id)
            )
        ).fetchone()
        if row is None:
            raise NotFoundError("Subscription not found")
        if row.status != "cancelled":
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.id == subscription_id)
                .values(status="cancelled", updated_at=now)
            )
            logger.info(
                "subscription.cancelled",
                extra={"event_type": "subscription.cancelled", "user_id": user_id},
            )
        row = session.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).fetchone()
    return _subscription_to_dict(row, now)
