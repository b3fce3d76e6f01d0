"""
Billing API routes.

- GET  /api/billing/catalog: Plans and add-ons
- POST /api/billing/quote: Price breakdown for a selection
- POST /api/billing/orders: Create a pending order (or settle a free one)
- POST /api/billing/orders/{transaction_id}/settle: Verify a gateway payment
- POST /api/billing/orders/{transaction_id}/cancel: Payment UI dismissed
- GET  /api/billing/transactions: Payment history
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from resumeledger.core.auth import get_current_user_id
from resumeledger.features.catalog.service import get_catalog
from resumeledger.features.orders.service import (
    cancel_order,
    create_order,
    get_transaction,
    list_transactions,
    settle_payment,
)
from resumeledger.features.pricing.service import get_quote

router = APIRouter(prefix="/api/billing", tags=["billing"])


class QuoteRequest(BaseModel):
    """Selection to price. Amounts are minor units (paise)."""
    plan_id: Optional[str] = None
    coupon_code: Optional[str] = None
    wallet_deduction: int = Field(default=0, ge=0)
    addons: Dict[str, int] = Field(default_factory=dict)


class OrderRequest(QuoteRequest):
    amount: int = Field(..., ge=0, description="Amount the client displayed")


class SettleRequest(BaseModel):
    provider_order_id: str
    provider_payment_id: str
    provider_signature: str


@router.get("/catalog")
def catalog():
    return get_catalog().to_dict()


@router.post("/quote")
def quote(request: QuoteRequest, user_id: str = Depends(get_current_user_id)):
    breakdown = get_quote(
        user_id,
        request.plan_id,
        request.coupon_code,
        request.wallet_deduction,
        request.addons,
    )
    return breakdown.to_dict()


@router.post("/orders")
def orders(request: OrderRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create an order.

    Returns the gateway order id and key id for the checkout widget, or a
    settled result when the amount is zero.

    Errors:
        400: Unknown plan/add-on, coupon not applicable, payment not verified
        409: Coupon already used or exhausted
        502: Gateway unavailable
    """
    result = create_order(
        user_id,
        request.plan_id,
        request.amount,
        coupon_code=request.coupon_code,
        wallet_deduction=request.wallet_deduction,
        addons=request.addons,
    )
    return result.to_dict()


@router.post("/orders/{transaction_id}/settle")
def settle(transaction_id: str, request: SettleRequest, user_id: str = Depends(get_current_user_id)):
    result = settle_payment(
        user_id,
        transaction_id,
        request.provider_order_id,
        request.provider_payment_id,
        request.provider_signature,
    )
    return result.to_dict()


@router.post("/orders/{transaction_id}/cancel")
def cancel(transaction_id: str, user_id: str = Depends(get_current_user_id)):
    return cancel_order(user_id, transaction_id)


@router.get("/orders/{transaction_id}")
def order_detail(transaction_id: str, user_id: str = Depends(get_current_user_id)):
    return get_transaction(transaction_id, user_id=user_id)


@router.get("/transactions")
def transactions(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    return {"transactions": list_transactions(user_id, limit=limit)}
