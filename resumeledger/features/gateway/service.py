import os
from functools import lru_cache
from typing import List, Optional

from resumeledger.features.gateway.provider import GatewayError, PaymentGateway
from resumeledger.features.gateway.razorpay_provider import RazorpayGateway

_built: List[RazorpayGateway] = []


def gateway_enabled() -> bool:
    """Check if the payment gateway is configured."""
    return bool(os.getenv("RAZORPAY_KEY_ID") and os.getenv("RAZORPAY_KEY_SECRET"))


@lru_cache(maxsize=1)
def _razorpay_for(key_id: str, key_secret: str) -> RazorpayGateway:
    # One pooled httpx client per credential pair, shared across requests
    gateway = RazorpayGateway(key_id, key_secret)
    _built.append(gateway)
    return gateway


def get_provider() -> Optional[PaymentGateway]:
    """Get the payment gateway if enabled."""
    if not gateway_enabled():
        return None
    try:
        return _razorpay_for(os.environ["RAZORPAY_KEY_ID"], os.environ["RAZORPAY_KEY_SECRET"])
    except GatewayError:
        return None


def close_providers() -> None:
    """Close every gateway client built so far and forget the cached one."""
    _razorpay_for.cache_clear()
    while _built:
        _built.pop().close()
