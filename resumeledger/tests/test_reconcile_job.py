"""
Test stale-pending sweep (reconcile job and worker).
"""
from datetime import timedelta

from resumeledger.core.database import utc_now
from resumeledger.core.metrics import pending_swept_total
from resumeledger.features.orders.reconcile_job import run_reconcile_job
from resumeledger.features.orders.service import create_order, get_transaction, settle_payment
from resumeledger.workers.sweep_pending import sweep_pending


def test_sweep_fails_only_stale_pending(gateway):
    now = utc_now()
    stale = create_order("user_alice", "lite_check", 9900, now=now - timedelta(hours=3))
    fresh = create_order("user_alice", "lite_check", 9900, now=now)

    result = run_reconcile_job(now, fix=True, ttl_minutes=60)

    assert result["issues_found"] == 1
    assert result["corrections_applied"] == 1
    assert result["stale_transaction_ids"] == [stale.transaction_id]
    stale_tx = get_transaction(stale.transaction_id)
    assert stale_tx["status"] == "failed"
    assert stale_tx["failure_reason"] == "expired_pending"
    assert get_transaction(fresh.transaction_id)["status"] == "pending"
    assert pending_swept_total.value() == 1


def test_sweep_dry_run_reports_without_changes(gateway):
    now = utc_now()
    stale = create_order("user_alice", "lite_check", 9900, now=now - timedelta(hours=3))

    result = run_reconcile_job(now, fix=False, ttl_minutes=60)

    assert result["issues_found"] == 1
    assert result["corrections_applied"] == 0
    assert get_transaction(stale.transaction_id)["status"] == "pending"


def test_sweep_leaves_settled_transactions_alone(gateway):
    now = utc_now()
    order = create_order("user_alice", "lite_check", 9900, now=now - timedelta(hours=3))
    settle_payment(
        "user_alice",
        order.transaction_id,
        order.order_id,
        "pay_1",
        gateway.sign(order.order_id, "pay_1"),
    )

    result = run_reconcile_job(now, ttl_minutes=60)

    assert result["issues_found"] == 0
    assert get_transaction(order.transaction_id)["status"] == "success"


def test_worker_uses_configured_ttl(gateway):
    create_order("user_alice", "lite_check", 9900, now=utc_now() - timedelta(days=1))

    result = sweep_pending()

    assert result["candidates"] == 1
    assert result["failed"] == 1
    assert result["dry_run"] is False
