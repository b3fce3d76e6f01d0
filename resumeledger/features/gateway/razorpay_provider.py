"""
Razorpay payment gateway implementation.

Implements the PaymentGateway protocol over the Razorpay Orders REST API.
Signature verification is computed locally from the key secret.
"""
import hashlib
import hmac
import logging
import os
from typing import Any, Dict, Optional

import httpx

from resumeledger.core.config import settings
from resumeledger.features.gateway.provider import (
    GatewayConfigError,
    GatewayError,
    GatewayOrder,
)

logger = logging.getLogger(__name__)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    payload = f"{order_id}|{payment_id}"
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


class RazorpayGateway:
    """Razorpay implementation of PaymentGateway protocol."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize Razorpay gateway.

        Args:
            key_id: Razorpay key id (defaults to RAZORPAY_KEY_ID env var)
            key_secret: Razorpay key secret (defaults to RAZORPAY_KEY_SECRET env var)
            base_url: API base (defaults to settings.RAZORPAY_API_BASE)
            timeout: Request timeout in seconds (defaults to settings.GATEWAY_TIMEOUT_SECONDS)
            transport: Optional httpx transport (tests)
        """
        self.key_id = key_id or os.getenv("RAZORPAY_KEY_ID") or settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret or os.getenv("RAZORPAY_KEY_SECRET") or settings.RAZORPAY_KEY_SECRET

        if not self.key_id or not self.key_secret:
            raise GatewayConfigError("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not configured")

        self._client = httpx.Client(
            base_url=(base_url or settings.RAZORPAY_API_BASE).rstrip("/"),
            auth=(self.key_id, self.key_secret),
            timeout=timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, Any]) -> GatewayOrder:
        """Create Razorpay order."""
        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt[:40],
            # Razorpay notes accept string values only
            "notes": {k: "" if v is None else str(v) for k, v in notes.items()},
        }
        data = self._request("POST", "/orders", json=payload)
        order_id = data.get("id")
        if not order_id:
            raise GatewayError("Razorpay did not return an order id")
        return self._to_order(data)

    def fetch_order(self, order_id: str) -> GatewayOrder:
        """Fetch Razorpay order."""
        data = self._request("GET", f"/orders/{order_id}")
        return self._to_order(data)

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = compute_signature(self.key_secret, order_id or "", payment_id or "")
        return hmac.compare_digest(expected, signature or "")

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "gateway.http_error",
                extra={"event_type": "gateway.http_error", "path": path, "status": e.response.status_code},
            )
            raise GatewayError(f"Razorpay rejected {method} {path}: {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.warning("gateway.timeout", extra={"event_type": "gateway.timeout", "path": path})
            raise GatewayError(f"Razorpay timed out on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.warning("gateway.network_error", extra={"event_type": "gateway.network_error", "path": path})
            raise GatewayError(f"Razorpay unreachable on {method} {path}: {e}") from e
        except ValueError as e:
            raise GatewayError(f"Razorpay returned invalid JSON on {method} {path}") from e

    @staticmethod
    def _to_order(data: Dict[str, Any]) -> GatewayOrder:
        notes = data.get("notes") or {}
        if isinstance(notes, list):
            # Razorpay returns [] when an order carries no notes
            notes = {}
        return GatewayOrder(
            order_id=data.get("id", ""),
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            status=data.get("status", "created"),
            notes=dict(notes),
        )
