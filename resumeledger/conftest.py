# resumeledger/conftest.py
import os
from typing import Any, Dict

import pytest

# Must be set before resumeledger.core.config builds its Settings
os.environ.setdefault("ENV", "test")
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ALLOW_HEADER_AUTH", "true")
os.environ.setdefault("ADMIN_KEY", "test-admin-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret-with-enough-length-for-hs256")
os.environ.pop("RAZORPAY_KEY_ID", None)
os.environ.pop("RAZORPAY_KEY_SECRET", None)

from resumeledger.core.database import create_all_tables, dispose_engine, init_engine  # noqa: E402
from resumeledger.core.metrics import METRICS  # noqa: E402
from resumeledger.features.catalog.service import reload_catalog  # noqa: E402
from resumeledger.features.gateway.provider import GatewayError, GatewayOrder  # noqa: E402
from resumeledger.features.gateway.razorpay_provider import compute_signature  # noqa: E402
from resumeledger.features.gateway.service import close_providers  # noqa: E402

FAKE_KEY_ID = "rzp_test_fake"
FAKE_KEY_SECRET = "fake_secret"


@pytest.fixture(scope="function", autouse=True)
def ledger_db(tmp_path, monkeypatch):
    """
    Fresh SQLite ledger for every test.

    TEST_DATABASE_URL points at a throwaway file; the engine is rebuilt so
    no state leaks between tests.
    """
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    dispose_engine()
    init_engine(url)
    create_all_tables()
    reload_catalog()
    METRICS.reset()
    yield url
    close_providers()
    dispose_engine()


class FakeGateway:
    """In-memory PaymentGateway that signs like Razorpay."""

    def __init__(self, key_id: str = FAKE_KEY_ID, key_secret: str = FAKE_KEY_SECRET):
        self.key_id = key_id
        self.key_secret = key_secret
        self.orders: Dict[str, GatewayOrder] = {}
        self.fail_create = False
        self.fail_fetch = False
        self.created_calls = 0

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, Any]) -> GatewayOrder:
        self.created_calls += 1
        if self.fail_create:
            raise GatewayError("simulated outage")
        order = GatewayOrder(
            order_id=f"order_{len(self.orders) + 1:04d}",
            amount=amount,
            currency=currency,
            notes={k: "" if v is None else str(v) for k, v in notes.items()},
        )
        self.orders[order.order_id] = order
        return order

    def fetch_order(self, order_id: str) -> GatewayOrder:
        if self.fail_fetch:
            raise GatewayError("simulated outage")
        if order_id not in self.orders:
            raise GatewayError(f"unknown order {order_id}")
        return self.orders[order_id]

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return self.sign(order_id, payment_id) == signature

    def sign(self, order_id: str, payment_id: str) -> str:
        return compute_signature(self.key_secret, order_id, payment_id)


@pytest.fixture
def gateway(monkeypatch):
    """Enable payments with a FakeGateway in place of Razorpay."""
    fake = FakeGateway()
    monkeypatch.setattr("resumeledger.features.orders.service.get_provider", lambda: fake)
    return fake


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from resumeledger.main import app

    with TestClient(app) as test_client:
        yield test_client
