"""Credit balance and consumption routes."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from resumeledger.core.auth import get_current_user_id
from resumeledger.features.credits.consumption import consume
from resumeledger.features.credits.service import (
    cancel_subscription,
    get_balance,
    list_subscriptions,
)

router = APIRouter(prefix="/api/credits", tags=["credits"])


class ConsumeRequest(BaseModel):
    kind: str


@router.get("/balance")
def balance(user_id: str = Depends(get_current_user_id)):
    return get_balance(user_id).to_dict()


@router.post("/consume")
def consume_credit(request: ConsumeRequest, user_id: str = Depends(get_current_user_id)):
    """
    Consume one unit of a resource kind.

    402 no_credits_remaining means the user should be sent to a purchase flow.
    """
    return consume(user_id, request.kind).to_dict()


@router.get("/subscriptions")
def subscriptions(user_id: str = Depends(get_current_user_id)):
    return {"subscriptions": list_subscriptions(user_id)}


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel(subscription_id: str, user_id: str = Depends(get_current_user_id)):
    return cancel_subscription(user_id, subscription_id)
