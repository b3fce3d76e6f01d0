"""
Pricing engine.

Computes the payable amount for a plan + coupon + wallet + add-on selection
from the trusted catalog. The same computation runs for quotes shown to the
client and again when an order is created; both must agree exactly.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from resumeledger.core.config import settings
from resumeledger.core.database import get_db_session, payment_transactions, utc_now
from resumeledger.core.errors import (
    CouponAlreadyUsed,
    CouponLimitReached,
    CouponNotApplicable,
    UnknownAddOn,
    UnknownPlan,
    ValidationError,
)
from resumeledger.features.catalog.service import (
    Catalog,
    get_catalog,
    is_addon_only,
    normalize_coupon_code,
)
from resumeledger.features.wallet.service import get_available_wallet_balance

# A coupon counts as used by a user once one of their transactions with it left pending
COUPON_USED_STATUSES = ("success", "failed")
# Statuses counted against a coupon's global limit
COUPON_LIMIT_STATUSES = ("success", "pending")


@dataclass(frozen=True)
class PricingBreakdown:
    plan_id: Optional[str]
    original_amount: int
    discount_amount: int
    coupon_code: Optional[str]
    wallet_applied: int
    addons_total: int
    final_amount: int
    currency: str
    catalog_version: str
    addons: Dict[str, int] = field(default_factory=dict)

    @property
    def plan_after_discount(self) -> int:
        return max(0, self.original_amount - self.discount_amount)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def normalize_addons(addons: Optional[Mapping[str, int]], catalog: Catalog) -> Dict[str, int]:
    """Drop zero quantities and reject unknown ids or negative quantities."""
    selected: Dict[str, int] = {}
    for addon_id, qty in (addons or {}).items():
        if catalog.get_addon(addon_id) is None:
            raise UnknownAddOn(f"Unknown add-on: {addon_id}")
        qty = int(qty)
        if qty < 0:
            raise ValidationError(f"Add-on quantity must not be negative: {addon_id}")
        if qty > 0:
            selected[addon_id] = qty
    return selected


def coupon_used_by_user(session: Session, user_id: str, coupon_code: str) -> bool:
    row = session.execute(
        select(payment_transactions.c.id)
        .where(
            and_(
                payment_transactions.c.user_id == user_id,
                payment_transactions.c.coupon_code == coupon_code,
                payment_transactions.c.status.in_(COUPON_USED_STATUSES),
            )
        )
        .limit(1)
    ).first()
    return row is not None


def coupon_global_uses(session: Session, coupon_code: str) -> int:
    count = session.execute(
        select(func.count()).select_from(payment_transactions).where(
            and_(
                payment_transactions.c.coupon_code == coupon_code,
                payment_transactions.c.status.in_(COUPON_LIMIT_STATUSES),
            )
        )
    ).scalar()
    return int(count or 0)


def compute_quote(
    session: Session,
    user_id: str,
    plan_id: Optional[str],
    coupon_code: Optional[str] = None,
    wallet_requested: int = 0,
    addons: Optional[Mapping[str, int]] = None,
    *,
    catalog: Optional[Catalog] = None,
    now: Optional[datetime] = None,
) -> PricingBreakdown:
    """
    Compute the authoritative price breakdown.

    Args:
        session: Open database session (coupon and wallet lookups)
        user_id: Caller, for coupon reuse and wallet balance
        plan_id: Catalog plan id, or None / "addon_only_purchase"
        coupon_code: Optional coupon code (case-insensitive)
        wallet_requested: Wallet amount the user asked to apply (minor units)
        addons: {addon_id: quantity}

    Returns:
        PricingBreakdown

    Raises:
        UnknownPlan, UnknownAddOn, CouponAlreadyUsed, CouponNotApplicable,
        CouponLimitReached, ValidationError
    """
    catalog = catalog or get_catalog()
    now = now or utc_now()

    selected_addons = normalize_addons(addons, catalog)

    if is_addon_only(plan_id):
        if not selected_addons:
            raise ValidationError("An add-on only purchase needs at least one add-on")
        resolved_plan_id = None
        price = 0
    else:
        plan = catalog.get_plan(plan_id)
        if plan is None:
            raise UnknownPlan(f"Unknown plan: {plan_id}")
        resolved_plan_id = plan.id
        price = plan.price

    discount = 0
    code = normalize_coupon_code(coupon_code)
    if code:
        if coupon_used_by_user(session, user_id, code):
            raise CouponAlreadyUsed("This coupon has already been used by your account.")
        coupon = catalog.get_coupon(code)
        if coupon is None or not coupon.applies_to(resolved_plan_id):
            raise CouponNotApplicable(f"Coupon {code} is not valid for this plan.")
        if coupon.global_limit is not None and coupon_global_uses(session, code) >= coupon.global_limit:
            raise CouponLimitReached(f"Coupon {code} has reached its usage limit.")
        discount = min(price, coupon.discount_for(price))

    plan_after_discount = max(0, price - discount)

    wallet_requested = int(wallet_requested or 0)
    if wallet_requested < 0:
        raise ValidationError("Wallet deduction must not be negative")
    wallet_applied = 0
    if wallet_requested > 0 and plan_after_discount > 0:
        available = get_available_wallet_balance(session, user_id, now)
        wallet_applied = min(wallet_requested, available, plan_after_discount)

    addons_total = sum(catalog.addons[addon_id].price * qty for addon_id, qty in selected_addons.items())
    final_amount = max(0, plan_after_discount - wallet_applied) + addons_total

    return PricingBreakdown(
        plan_id=resolved_plan_id,
        original_amount=price,
        discount_amount=discount,
        coupon_code=code,
        wallet_applied=wallet_applied,
        addons_total=addons_total,
        final_amount=final_amount,
        currency=settings.CURRENCY,
        catalog_version=catalog.version,
        addons=selected_addons,
    )


def get_quote(
    user_id: str,
    plan_id: Optional[str],
    coupon_code: Optional[str] = None,
    wallet_requested: int = 0,
    addons: Optional[Mapping[str, int]] = None,
) -> PricingBreakdown:
    """Quote for display; read-only."""
    with get_db_session() as session:
        return compute_quote(session, user_id, plan_id, coupon_code, wallet_requested, addons)
