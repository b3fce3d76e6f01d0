from fastapi import APIRouter, Depends, Query

from resumeledger.core.auth import get_current_user_id
from resumeledger.core.database import get_db_session
from resumeledger.features.wallet.service import (
    get_available_wallet_balance,
    get_wallet_balance,
    list_wallet_entries,
)

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.get("")
def wallet(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    with get_db_session() as session:
        balance = get_wallet_balance(user_id, session=session)
        available = get_available_wallet_balance(session, user_id)
    return {
        "balance": balance,
        "available": available,
        "entries": list_wallet_entries(user_id, limit=limit),
    }
