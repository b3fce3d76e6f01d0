"""
Admin-only ledger operations.
Requires X-Admin-Key header for all endpoints.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from resumeledger.core.auth import require_admin_key
from resumeledger.features.orders.reconcile_job import run_reconcile_job
from resumeledger.features.wallet.service import credit_wallet

logger = logging.getLogger("resumeledger.admin")

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


class ReconcileRequest(BaseModel):
    fix: bool = True
    ttl_minutes: Optional[int] = Field(default=None, gt=0)
    limit: int = Field(default=500, ge=1, le=5000)


class WalletCreditRequest(BaseModel):
    user_id: str
    amount: int = Field(..., gt=0, description="Minor units")
    reason: str = "admin_adjustment"
    reference: Optional[str] = None


@router.post("/billing/reconcile")
def reconcile(request: ReconcileRequest):
    """Fail pending transactions older than the TTL."""
    return run_reconcile_job(fix=request.fix, ttl_minutes=request.ttl_minutes, limit=request.limit)


@router.post("/wallet/credit")
def wallet_credit(request: WalletCreditRequest):
    result = credit_wallet(request.user_id, request.amount, request.reason, reference=request.reference)
    logger.info("admin.wallet_credit", extra={"event_type": "admin.wallet_credit", "user_id": request.user_id})
    return result
