"""
Payment gateway protocol.

Defines the interface for payment providers (Razorpay, etc.).
This allows swapping providers without changing ledger logic.
"""
from typing import Protocol, Dict, Any
from dataclasses import dataclass, field


@dataclass
class GatewayOrder:
    """Provider order as created or read back from the gateway."""
    order_id: str
    amount: int  # minor units
    currency: str
    status: str = "created"
    notes: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must handle:
    - Order creation for a server-computed amount
    - Reading an order back (amount and notes) during verification
    - Local signature verification against the shared secret
    """

    key_id: str

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, Any]) -> GatewayOrder:
        """
        Create a provider order.

        Args:
            amount: Amount in minor currency units
            currency: ISO currency code
            receipt: Merchant receipt reference
            notes: Metadata echoed back by fetch_order

        Returns:
            The created GatewayOrder

        Raises:
            GatewayError: If the provider rejects or cannot be reached
        """
        ...

    def fetch_order(self, order_id: str) -> GatewayOrder:
        """
        Fetch an existing order.

        Raises:
            GatewayError: If the order cannot be read
        """
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Return True if the signature matches HMAC(secret, "order_id|payment_id")."""
        ...


class GatewayError(Exception):
    """Base exception for payment gateway errors."""
    pass


class GatewayConfigError(GatewayError):
    """Raised when gateway credentials are missing."""
    pass
