"""
Test HTTP surface with TestClient.

Identity comes from the X-User-Id header (ALLOW_HEADER_AUTH is on in tests)
or from a Bearer JWT signed with the test secret.
"""
import time

import jwt

from resumeledger.core.config import settings

ALICE = {"X-User-Id": "user_alice"}
ADMIN = {"X-Admin-Key": "test-admin-key"}


def _token(sub="user_jwt", secret=None, **claims):
    payload = {"sub": sub, "aud": "authenticated", "exp": int(time.time()) + 300, **claims}
    return jwt.encode(payload, secret or settings.SUPABASE_JWT_SECRET, algorithm="HS256")


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_with_tables(client):
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_catalog_is_public(client):
    response = client.get("/api/billing/catalog")
    assert response.status_code == 200
    assert any(p["id"] == "lite_check" for p in response.json()["plans"])


def test_quote_requires_identity(client):
    response = client.post("/api/billing/quote", json={"plan_id": "lite_check"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "http_error"


def test_quote(client):
    response = client.post(
        "/api/billing/quote",
        json={"plan_id": "lite_check", "coupon_code": "first100"},
        headers=ALICE,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["final_amount"] == 0
    assert body["discount_amount"] == 9900


def test_inapplicable_coupon_error_envelope(client):
    response = client.post(
        "/api/billing/quote",
        json={"plan_id": "lite_check", "coupon_code": "worthyone"},
        headers={**ALICE, "x-request-id": "rid-123"},
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "coupon_not_applicable"
    assert body["error"]["request_id"] == "rid-123"
    assert response.headers["x-request-id"] == "rid-123"


def test_free_order_then_consume(client):
    order = client.post(
        "/api/billing/orders",
        json={"plan_id": "lite_check", "coupon_code": "first100", "amount": 0},
        headers=ALICE,
    )
    assert order.status_code == 200
    assert order.json()["status"] == "success"

    consumed = client.post("/api/credits/consume", json={"kind": "optimization"}, headers=ALICE)
    assert consumed.status_code == 200
    assert consumed.json()["remaining"] == 1

    balance = client.get("/api/credits/balance", headers=ALICE).json()
    assert balance["credits"]["optimization"]["used"] == 1
    assert balance["status"] == "active"


def test_price_tampering_gets_generic_message(client, gateway):
    response = client.post(
        "/api/billing/orders",
        json={"plan_id": "career_pro_max", "amount": 100},
        headers=ALICE,
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "payment_not_verified"
    assert body["detail"] == "Payment could not be verified"
    assert "100" not in body["detail"]


def test_paid_order_settle_flow(client, gateway):
    created = client.post(
        "/api/billing/orders",
        json={"plan_id": "smart_apply_pack", "amount": 49900},
        headers=ALICE,
    ).json()
    assert created["status"] == "pending"
    assert created["key_id"] == gateway.key_id

    payload = {
        "provider_order_id": created["order_id"],
        "provider_payment_id": "pay_api",
        "provider_signature": gateway.sign(created["order_id"], "pay_api"),
    }
    url = f"/api/billing/orders/{created['transaction_id']}/settle"
    first = client.post(url, json=payload, headers=ALICE)
    second = client.post(url, json=payload, headers=ALICE)

    assert first.status_code == 200
    assert first.json()["already_settled"] is False
    assert second.json()["already_settled"] is True
    assert second.json()["credits_granted"] == first.json()["credits_granted"]

    history = client.get("/api/billing/transactions", headers=ALICE).json()["transactions"]
    assert [tx["status"] for tx in history] == ["success"]


def test_cancel_order(client, gateway):
    created = client.post(
        "/api/billing/orders",
        json={"plan_id": "lite_check", "amount": 9900},
        headers=ALICE,
    ).json()

    response = client.post(f"/api/billing/orders/{created['transaction_id']}/cancel", headers=ALICE)

    assert response.json()["status"] == "failed"


def test_other_user_cannot_see_transaction(client, gateway):
    created = client.post(
        "/api/billing/orders",
        json={"plan_id": "lite_check", "amount": 9900},
        headers=ALICE,
    ).json()

    response = client.get(f"/api/billing/orders/{created['transaction_id']}", headers={"X-User-Id": "user_bob"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "transaction_not_found"


def test_consume_without_credits_is_402(client):
    response = client.post("/api/credits/consume", json={"kind": "score_check"}, headers=ALICE)
    assert response.status_code == 402
    assert response.json()["error"]["code"] == "no_credits_remaining"


def test_gateway_missing_is_502(client):
    response = client.post(
        "/api/billing/orders",
        json={"plan_id": "lite_check", "amount": 9900},
        headers=ALICE,
    )
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "gateway_unavailable"


def test_bearer_token_identity(client):
    response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {_token()}"})
    assert response.status_code == 200
    assert response.json()["user_id"] == "user_jwt"


def test_bearer_token_wrong_secret_rejected(client):
    token = _token(secret="not-the-secret-but-long-enough-for-hs256")
    response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_expired_token_rejected(client):
    token = _token(exp=int(time.time()) - 10)
    response = client.get("/api/credits/balance", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_header_auth_can_be_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_HEADER_AUTH", False)
    response = client.get("/api/credits/balance", headers=ALICE)
    assert response.status_code == 401


def test_admin_requires_key(client):
    response = client.post("/admin/billing/reconcile", json={})
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_admin_wallet_credit_and_wallet_view(client):
    credited = client.post(
        "/admin/wallet/credit",
        json={"user_id": "user_alice", "amount": 1500, "reason": "referral"},
        headers=ADMIN,
    )
    assert credited.status_code == 200
    assert credited.json()["balance"] == 1500

    wallet = client.get("/api/wallet", headers=ALICE).json()
    assert wallet["balance"] == 1500
    assert wallet["available"] == 1500
    assert wallet["entries"][0]["amount"] == 1500


def test_admin_reconcile(client):
    response = client.post("/admin/billing/reconcile", json={"fix": False}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["issues_found"] == 0


def test_subscription_history_and_cancel(client):
    client.post(
        "/api/billing/orders",
        json={"plan_id": "lite_check", "coupon_code": "first100", "amount": 0},
        headers=ALICE,
    )
    [sub] = client.get("/api/credits/subscriptions", headers=ALICE).json()["subscriptions"]
    assert sub["plan_id"] == "lite_check"
    assert sub["expired"] is False

    cancelled = client.post(f"/api/credits/subscriptions/{sub['id']}/cancel", headers=ALICE)

    assert cancelled.json()["status"] == "cancelled"
    assert client.get("/api/credits/balance", headers=ALICE).json()["status"] == "inactive"


def test_metrics_endpoint_exports_counters(client):
    client.get("/healthz")
    client.get("/api/billing/catalog")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert 'path="/api/billing/catalog"' in response.text
    assert 'path="/healthz"' not in response.text


def test_malformed_request_id_is_replaced(client):
    response = client.get("/api/billing/catalog", headers={"x-request-id": "bad id <script>"})
    rid = response.headers["x-request-id"]
    assert rid != "bad id <script>"
    assert len(rid) == 36
