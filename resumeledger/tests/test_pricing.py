"""
Test pricing engine.

Quotes are computed against the built-in catalog and a fresh SQLite ledger.
"""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import insert

from resumeledger.core.database import get_db_session, payment_transactions, utc_now
from resumeledger.core.errors import (
    CouponAlreadyUsed,
    CouponLimitReached,
    CouponNotApplicable,
    UnknownAddOn,
    UnknownPlan,
    ValidationError,
)
from resumeledger.features.catalog.service import get_catalog
from resumeledger.features.pricing.service import get_quote
from resumeledger.features.wallet.service import credit_wallet


def _insert_transaction(user_id, status, coupon_code=None, wallet=0, created_at=None, plan_id="lite_check"):
    now = created_at or utc_now()
    with get_db_session() as session:
        session.execute(
            insert(payment_transactions).values(
                id=str(uuid.uuid4()),
                user_id=user_id,
                plan_id=plan_id,
                status=status,
                currency="INR",
                original_amount=9900,
                discount_amount=0,
                wallet_deduction_amount=wallet,
                addons_total=0,
                final_amount=9900 - wallet,
                coupon_code=coupon_code,
                addons={},
                created_at=now,
                updated_at=now,
            )
        )


def test_plan_price_without_extras():
    quote = get_quote("user_alice", "smart_apply_pack")
    assert quote.original_amount == 49900
    assert quote.discount_amount == 0
    assert quote.final_amount == 49900
    assert quote.catalog_version == "2024-builtin"


def test_unknown_plan_rejected():
    with pytest.raises(UnknownPlan):
        get_quote("user_alice", "platinum_forever")


def test_lite_check_with_first100_is_free():
    quote = get_quote("user_alice", "lite_check", coupon_code="FIRST100")
    assert quote.final_amount == 0
    assert quote.discount_amount == 9900
    assert quote.coupon_code == "first100"


def test_percent_coupon_floors_discount():
    quote = get_quote("user_alice", "career_pro_max", coupon_code="worthyone")
    assert quote.discount_amount == 99950
    assert quote.final_amount == 99950


@pytest.mark.parametrize("plan_id", ["lite_check", "pro_resume_kit", "career_boost_plus"])
def test_inapplicable_coupon_never_discounts(plan_id):
    with pytest.raises(CouponNotApplicable):
        get_quote("user_alice", plan_id, coupon_code="worthyone")


def test_unknown_coupon_not_applicable():
    with pytest.raises(CouponNotApplicable):
        get_quote("user_alice", "lite_check", coupon_code="nosuchcode")


def test_coupon_rejected_for_addon_only_purchase():
    with pytest.raises(CouponNotApplicable):
        get_quote("user_alice", None, coupon_code="first100", addons={"jd_optimization_single": 1})


def test_coupon_already_used_after_success():
    _insert_transaction("user_alice", "success", coupon_code="first100")
    with pytest.raises(CouponAlreadyUsed):
        get_quote("user_alice", "lite_check", coupon_code="first100")


def test_coupon_already_used_after_failed_attempt():
    _insert_transaction("user_alice", "failed", coupon_code="worthyone", plan_id="career_pro_max")
    with pytest.raises(CouponAlreadyUsed):
        get_quote("user_alice", "career_pro_max", coupon_code="worthyone")


def test_pending_transaction_does_not_burn_coupon():
    _insert_transaction("user_alice", "pending", coupon_code="first100")
    quote = get_quote("user_alice", "lite_check", coupon_code="first100")
    assert quote.final_amount == 0


def test_coupon_use_is_per_user():
    _insert_transaction("user_bob", "success", coupon_code="first100")
    quote = get_quote("user_alice", "lite_check", coupon_code="first100")
    assert quote.discount_amount == 9900


def test_global_limit_counts_success_and_pending():
    limit = get_catalog().get_coupon("first100").global_limit
    for i in range(limit - 1):
        _insert_transaction(f"user_{i}", "success", coupon_code="first100")
    _insert_transaction("user_last", "pending", coupon_code="first100")

    with pytest.raises(CouponLimitReached):
        get_quote("user_alice", "lite_check", coupon_code="first100")


def test_global_limit_ignores_failed_transactions():
    for i in range(5):
        _insert_transaction(f"user_{i}", "failed", coupon_code="first100")
    quote = get_quote("user_alice", "lite_check", coupon_code="first100")
    assert quote.final_amount == 0


def test_addons_use_catalog_prices():
    quote = get_quote(
        "user_alice",
        "lite_check",
        addons={"jd_optimization_single": 2, "linkedin_messages_50": 1, "resume_score_check_single": 0},
    )
    assert quote.addons_total == 2 * 4900 + 2900
    assert quote.addons == {"jd_optimization_single": 2, "linkedin_messages_50": 1}
    assert quote.final_amount == 9900 + 2 * 4900 + 2900


def test_unknown_addon_rejected():
    with pytest.raises(UnknownAddOn):
        get_quote("user_alice", "lite_check", addons={"free_money": 1})


def test_negative_addon_quantity_rejected():
    with pytest.raises(ValidationError):
        get_quote("user_alice", "lite_check", addons={"jd_optimization_single": -1})


def test_addon_only_purchase_prices_addons():
    quote = get_quote("user_alice", "addon_only_purchase", addons={"guided_resume_build_single": 1})
    assert quote.plan_id is None
    assert quote.original_amount == 0
    assert quote.final_amount == 9900


def test_addon_only_purchase_requires_an_addon():
    with pytest.raises(ValidationError):
        get_quote("user_alice", None)


def test_wallet_capped_by_balance():
    credit_wallet("user_alice", 3000, "referral")
    quote = get_quote("user_alice", "smart_apply_pack", wallet_requested=10000)
    assert quote.wallet_applied == 3000
    assert quote.final_amount == 49900 - 3000


def test_wallet_never_offsets_addons():
    credit_wallet("user_alice", 50000, "referral")
    quote = get_quote(
        "user_alice",
        "lite_check",
        coupon_code="first100",
        wallet_requested=5000,
        addons={"jd_optimization_single": 1},
    )
    assert quote.wallet_applied == 0
    assert quote.final_amount == 4900


def test_wallet_capped_by_plan_price():
    credit_wallet("user_alice", 50000, "referral")
    quote = get_quote("user_alice", "lite_check", wallet_requested=50000, addons={"jd_optimization_single": 1})
    assert quote.wallet_applied == 9900
    assert quote.final_amount == 4900


def test_wallet_reserved_by_live_pending_order():
    credit_wallet("user_alice", 5000, "referral")
    _insert_transaction("user_alice", "pending", wallet=4000)

    quote = get_quote("user_alice", "lite_check", wallet_requested=5000)

    assert quote.wallet_applied == 1000


def test_stale_pending_order_releases_wallet_reservation():
    credit_wallet("user_alice", 5000, "referral")
    _insert_transaction("user_alice", "pending", wallet=4000, created_at=utc_now() - timedelta(days=2))

    quote = get_quote("user_alice", "lite_check", wallet_requested=5000)

    assert quote.wallet_applied == 5000


def test_negative_wallet_request_rejected():
    with pytest.raises(ValidationError):
        get_quote("user_alice", "lite_check", wallet_requested=-1)


def test_breakdown_to_dict():
    payload = get_quote("user_alice", "lite_check").to_dict()
    assert payload["final_amount"] == 9900
    assert payload["currency"] == "INR"
    assert payload["addons"] == {}
