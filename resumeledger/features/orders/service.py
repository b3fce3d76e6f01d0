"""
Order / transaction ledger.

State machine for payment transactions:

    pending -> success   (settlement verified; credits granted in the same unit)
    pending -> failed    (gateway error, tampering, user cancel, stale sweep)

Terminal rows are never moved again. Settlement is idempotent: replaying a
verified payment returns the original grant without touching the ledger.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from resumeledger.core.database import (
    as_utc,
    coupon_redemptions,
    get_db_session,
    payment_transactions,
    utc_now,
)
from resumeledger.core.errors import (
    CouponAlreadyUsed,
    GatewayUnavailable,
    InvalidSignature,
    PriceIntegrityError,
    TamperingError,
    TransactionNotFound,
    TransactionStateError,
)
from resumeledger.core.logging import log_event
from resumeledger.core.metrics import orders_created_total, settlements_total
from resumeledger.features.catalog.service import get_catalog
from resumeledger.features.credits.service import CreditGrant, grant_credits, granted_for_transaction
from resumeledger.features.gateway.provider import GatewayError
from resumeledger.features.gateway.service import get_provider
from resumeledger.features.pricing.service import PricingBreakdown, compute_quote
from resumeledger.features.wallet.service import record_wallet_debit

logger = logging.getLogger(__name__)

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"


@dataclass
class SettlementResult:
    success: bool
    transaction_id: str
    subscription_id: Optional[str] = None
    credits_granted: Dict[str, int] = field(default_factory=dict)
    already_settled: bool = False

    @classmethod
    def from_grant(cls, grant: CreditGrant, already_settled: bool = False) -> "SettlementResult":
        return cls(
            success=True,
            transaction_id=grant.transaction_id,
            subscription_id=grant.subscription_id,
            credits_granted={kind.value: qty for kind, qty in grant.granted.items() if qty},
            already_settled=already_settled,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction_id": self.transaction_id,
            "subscription_id": self.subscription_id,
            "credits_granted": dict(self.credits_granted),
            "already_settled": self.already_settled,
        }


@dataclass
class OrderResult:
    transaction_id: str
    order_id: Optional[str]
    amount: int
    currency: str
    status: str
    breakdown: PricingBreakdown
    key_id: Optional[str] = None
    settlement: Optional[SettlementResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "order_id": self.order_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "key_id": self.key_id,
            "breakdown": self.breakdown.to_dict(),
            "settlement": self.settlement.to_dict() if self.settlement else None,
        }


class _AlreadyTransitioned(Exception):
    """The conditional pending -> success update matched no row."""


def _log_tampering(exc: TamperingError, *, user_id: str, transaction_id: Optional[str]) -> None:
    log_event(
        "warning",
        "payment.tampering_suspected",
        user_id=user_id,
        transaction_id=transaction_id,
        event_type="payment.tampering_suspected",
        error_code=type(exc).__name__,
        extra={"detail": exc.detail, **exc.context},
    )


def _load_transaction(session: Session, transaction_id: str):
    return session.execute(
        select(payment_transactions).where(payment_transactions.c.id == transaction_id)
    ).fetchone()


def _load_owned(user_id: str, transaction_id: str):
    with get_db_session() as session:
        row = _load_transaction(session, transaction_id)
    if row is None or row.user_id != user_id:
        raise TransactionNotFound("Transaction not found")
    return row


def mark_failed(transaction_id: str, reason: str, now: Optional[datetime] = None) -> bool:
    """Move a pending transaction to failed. Returns False if it was not pending."""
    now = now or utc_now()
    with get_db_session() as session:
        result = session.execute(
            update(payment_transactions)
            .where(
                and_(
                    payment_transactions.c.id == transaction_id,
                    payment_transactions.c.status == PENDING,
                )
            )
            .values(status=FAILED, failure_reason=reason, updated_at=now)
        )
        changed = result.rowcount == 1
    if changed:
        log_event(
            "info",
            "transaction.failed",
            transaction_id=transaction_id,
            event_type="transaction.failed",
            extra={"reason": reason},
        )
    return changed


def transaction_to_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "plan_id": row.plan_id,
        "status": row.status,
        "currency": row.currency,
        "original_amount": row.original_amount,
        "discount_amount": row.discount_amount,
        "wallet_deduction_amount": row.wallet_deduction_amount,
        "addons_total": row.addons_total,
        "final_amount": row.final_amount,
        "coupon_code": row.coupon_code,
        "addons": row.addons or {},
        "catalog_version": row.catalog_version,
        "provider_order_id": row.provider_order_id,
        "provider_payment_id": row.provider_payment_id,
        "subscription_id": row.subscription_id,
        "failure_reason": row.failure_reason,
        "created_at": as_utc(row.created_at),
        "updated_at": as_utc(row.updated_at),
        "settled_at": as_utc(row.settled_at),
    }


def create_order(
    user_id: str,
    plan_id: Optional[str],
    client_computed_amount: int,
    coupon_code: Optional[str] = None,
    wallet_deduction: int = 0,
    addons: Optional[Mapping[str, int]] = None,
    *,
    now: Optional[datetime] = None,
) -> OrderResult:
    """
    Create a pending transaction and its gateway order.

    The price is recomputed from the catalog; the client's figure is only
    compared against it. Zero-amount orders settle immediately without a
    gateway round trip.

    Raises:
        Pricing errors from compute_quote, PriceIntegrityError,
        GatewayUnavailable
    """
    catalog = get_catalog()
    now = now or utc_now()
    transaction_id = str(uuid.uuid4())

    with get_db_session() as session:
        quote = compute_quote(
            session, user_id, plan_id, coupon_code, wallet_deduction, addons,
            catalog=catalog, now=now,
        )
        if quote.final_amount != int(client_computed_amount):
            exc = PriceIntegrityError(
                "Client amount does not match server price",
                context={
                    "expected_amount": quote.final_amount,
                    "received_amount": client_computed_amount,
                    "plan_id": plan_id,
                    "coupon_code": quote.coupon_code,
                },
            )
            _log_tampering(exc, user_id=user_id, transaction_id=None)
            orders_created_total.inc(labels={"outcome": "integrity_error"})
            raise exc

        provider = None
        if quote.final_amount > 0:
            provider = get_provider()
            if provider is None:
                orders_created_total.inc(labels={"outcome": "gateway_unavailable"})
                raise GatewayUnavailable("Payment gateway is not configured")

        session.execute(
            insert(payment_transactions).values(
                id=transaction_id,
                user_id=user_id,
                plan_id=quote.plan_id,
                status=PENDING,
                currency=quote.currency,
                original_amount=quote.original_amount,
                discount_amount=quote.discount_amount,
                wallet_deduction_amount=quote.wallet_applied,
                addons_total=quote.addons_total,
                final_amount=quote.final_amount,
                coupon_code=quote.coupon_code,
                addons=dict(quote.addons),
                catalog_version=quote.catalog_version,
                created_at=now,
                updated_at=now,
            )
        )

    log_event(
        "info",
        "order.created",
        user_id=user_id,
        transaction_id=transaction_id,
        event_type="order.created",
        extra={"amount": quote.final_amount, "plan_id": quote.plan_id},
    )

    if provider is None:
        settlement = _settle(user_id, transaction_id, provider_payment_id=None, now=now)
        orders_created_total.inc(labels={"outcome": "settled_free"})
        return OrderResult(
            transaction_id=transaction_id,
            order_id=None,
            amount=0,
            currency=quote.currency,
            status=SUCCESS,
            breakdown=quote,
            settlement=settlement,
        )

    # The row exists from here on; nothing may leave it pending without an order id
    try:
        order = provider.create_order(
            quote.final_amount,
            quote.currency,
            receipt=transaction_id,
            notes={
                "transaction_id": transaction_id,
                "user_id": user_id,
                "plan_id": quote.plan_id or "",
                "coupon_code": quote.coupon_code or "",
            },
        )
        with get_db_session() as session:
            session.execute(
                update(payment_transactions)
                .where(payment_transactions.c.id == transaction_id)
                .values(provider_order_id=order.order_id, updated_at=utc_now())
            )
    except GatewayError as e:
        mark_failed(transaction_id, "gateway_error", now)
        orders_created_total.inc(labels={"outcome": "gateway_error"})
        raise GatewayUnavailable("Payment gateway is unavailable, please retry") from e
    except Exception as exc:
        mark_failed(transaction_id, f"order_error:{type(exc).__name__}"[:100], now)
        orders_created_total.inc(labels={"outcome": "error"})
        log_event(
            "error",
            "order.link_failed",
            user_id=user_id,
            transaction_id=transaction_id,
            event_type="order.link_failed",
            error_code=type(exc).__name__,
        )
        raise

    orders_created_total.inc(labels={"outcome": "created"})
    return OrderResult(
        transaction_id=transaction_id,
        order_id=order.order_id,
        amount=quote.final_amount,
        currency=quote.currency,
        status=PENDING,
        breakdown=quote,
        key_id=provider.key_id,
    )


def _prior_result(transaction_id: str) -> SettlementResult:
    with get_db_session() as session:
        grant = granted_for_transaction(session, transaction_id)
    return SettlementResult.from_grant(grant, already_settled=True)


def _settle(
    user_id: str,
    transaction_id: str,
    provider_payment_id: Optional[str],
    now: datetime,
) -> SettlementResult:
    """
    Flip pending -> success and apply its effects as one database unit.

    Any failure rolls the unit back and moves the transaction to failed.
    """
    try:
        with get_db_session() as session:
            row = _load_transaction(session, transaction_id)
            try:
                result = session.execute(
                    update(payment_transactions)
                    .where(
                        and_(
                            payment_transactions.c.id == transaction_id,
                            payment_transactions.c.status == PENDING,
                        )
                    )
                    .values(
                        status=SUCCESS,
                        provider_payment_id=provider_payment_id,
                        settled_at=now,
                        updated_at=now,
                    )
                )
            except IntegrityError as e:
                raise TransactionStateError("Payment is already linked to another transaction") from e
            if result.rowcount != 1:
                raise _AlreadyTransitioned()

            if row.coupon_code:
                try:
                    session.execute(
                        insert(coupon_redemptions).values(
                            user_id=row.user_id,
                            coupon_code=row.coupon_code,
                            transaction_id=transaction_id,
                            created_at=now,
                        )
                    )
                except IntegrityError as e:
                    raise CouponAlreadyUsed("This coupon has already been used by your account.") from e

            grant = grant_credits(session, row, catalog=get_catalog(), now=now)

            if row.wallet_deduction_amount > 0:
                record_wallet_debit(
                    session,
                    row.user_id,
                    row.wallet_deduction_amount,
                    transaction_id,
                    details={"plan_id": row.plan_id},
                )
    except _AlreadyTransitioned:
        with get_db_session() as session:
            current = _load_transaction(session, transaction_id)
        if current.status == SUCCESS and current.provider_payment_id == provider_payment_id:
            return _prior_result(transaction_id)
        raise TransactionStateError("Transaction is no longer pending")
    except Exception as exc:
        mark_failed(transaction_id, f"settlement_error:{type(exc).__name__}"[:100], now)
        settlements_total.inc(labels={"outcome": "error"})
        log_event(
            "error",
            "settlement.failed",
            user_id=user_id,
            transaction_id=transaction_id,
            event_type="settlement.failed",
            error_code=getattr(exc, "code", type(exc).__name__),
        )
        raise

    settlements_total.inc(labels={"outcome": "success"})
    log_event(
        "info",
        "settlement.succeeded",
        user_id=user_id,
        transaction_id=transaction_id,
        event_type="settlement.succeeded",
    )
    return SettlementResult.from_grant(grant)


def settle_payment(
    user_id: str,
    transaction_id: str,
    provider_order_id: str,
    provider_payment_id: str,
    provider_signature: str,
    *,
    now: Optional[datetime] = None,
) -> SettlementResult:
    """
    Verify a gateway payment and settle the transaction.

    Raises:
        TransactionNotFound: Unknown transaction or owned by another user
        TransactionStateError: Already failed, or settled by another payment
        InvalidSignature, PriceIntegrityError: Tampering (transaction failed)
        GatewayUnavailable: Gateway missing or unreachable (transaction failed)
    """
    now = now or utc_now()
    row = _load_owned(user_id, transaction_id)

    if row.status == SUCCESS:
        if row.provider_payment_id == provider_payment_id:
            settlements_total.inc(labels={"outcome": "replayed"})
            return _prior_result(transaction_id)
        raise TransactionStateError("Transaction was settled by a different payment")
    if row.status == FAILED:
        raise TransactionStateError("Transaction is no longer pending")

    provider = get_provider()
    if provider is None:
        mark_failed(transaction_id, "gateway_unavailable", now)
        raise GatewayUnavailable("Payment gateway is not configured")

    context = {
        "provider_order_id": provider_order_id,
        "provider_payment_id": provider_payment_id,
        "stored_order_id": row.provider_order_id,
    }

    try:
        if not provider.verify_signature(provider_order_id, provider_payment_id, provider_signature):
            raise InvalidSignature("Signature mismatch", context=context)
        if provider_order_id != row.provider_order_id:
            raise PriceIntegrityError("Order id does not belong to this transaction", context=context)
        try:
            order = provider.fetch_order(provider_order_id)
        except GatewayError as e:
            mark_failed(transaction_id, "gateway_error", now)
            settlements_total.inc(labels={"outcome": "gateway_error"})
            raise GatewayUnavailable("Payment gateway is unavailable, please retry") from e
        if order.amount != row.final_amount or order.notes.get("transaction_id") != row.id:
            raise PriceIntegrityError(
                "Gateway order does not match transaction",
                context={
                    **context,
                    "expected_amount": row.final_amount,
                    "gateway_amount": order.amount,
                    "gateway_transaction_id": order.notes.get("transaction_id"),
                },
            )
    except TamperingError as exc:
        _log_tampering(exc, user_id=user_id, transaction_id=transaction_id)
        mark_failed(transaction_id, type(exc).__name__, now)
        settlements_total.inc(labels={"outcome": "rejected"})
        raise

    return _settle(user_id, transaction_id, provider_payment_id, now)


def cancel_order(user_id: str, transaction_id: str) -> Dict[str, Any]:
    """Payment UI dismissed: fail the pending transaction. Terminal rows are returned as they are."""
    row = _load_owned(user_id, transaction_id)
    if row.status == PENDING:
        mark_failed(transaction_id, "cancelled_by_user")
        with get_db_session() as session:
            row = _load_transaction(session, transaction_id)
    return transaction_to_dict(row)


def get_transaction(transaction_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    with get_db_session() as session:
        row = _load_transaction(session, transaction_id)
    if row is None or (user_id is not None and row.user_id != user_id):
        raise TransactionNotFound("Transaction not found")
    return transaction_to_dict(row)


def list_transactions(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Payment history, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(payment_transactions)
            .where(payment_transactions.c.user_id == user_id)
            .order_by(payment_transactions.c.created_at.desc())
            .limit(limit)
        ).fetchall()
    return [transaction_to_dict(r) for r in rows]
