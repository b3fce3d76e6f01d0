"""
Test structured logging and tampering error rendering.
"""
import json
import logging

from resumeledger.core.errors import PAYMENT_NOT_VERIFIED_MESSAGE, InvalidSignature, PriceIntegrityError
from resumeledger.core.logging import JsonFormatter, latency_bucket_ms, log_event, request_id_ctx_var


def test_json_formatter_includes_ledger_fields():
    record = logging.LogRecord("resumeledger", logging.WARNING, __file__, 1, "payment.tampering_suspected", None, None)
    record.request_id = "rid-1"
    record.user_id = "user_alice"
    record.transaction_id = "tx-1"
    record.event_type = "payment.tampering_suspected"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["user_id"] == "user_alice"
    assert payload["transaction_id"] == "tx-1"
    assert payload["request_id"] == "rid-1"
    assert payload["timestamp"].endswith("Z")


def test_log_event_uses_context_request_id(caplog):
    token = request_id_ctx_var.set("rid-ctx")
    try:
        with caplog.at_level(logging.INFO, logger="resumeledger"):
            log_event("info", "order.created", user_id="user_alice", extra={"note": "x" * 600})
    finally:
        request_id_ctx_var.reset(token)

    [record] = [r for r in caplog.records if r.getMessage() == "order.created"]
    assert record.request_id == "rid-ctx"
    assert record.user_id == "user_alice"
    assert record.note.endswith("...<truncated>")


def test_tampering_errors_hide_detail_from_clients():
    exc = PriceIntegrityError("expected 9900 got 100", context={"expected_amount": 9900})
    assert exc.message == PAYMENT_NOT_VERIFIED_MESSAGE
    assert exc.code == "payment_not_verified"
    assert exc.status_code == 400
    assert str(exc) == "expected 9900 got 100"
    assert InvalidSignature("bad").code == "payment_not_verified"


def test_latency_buckets():
    assert latency_bucket_ms(None) == "unknown"
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(2500) == ">=1000ms"


def test_log_event_redacts_signatures(caplog):
    with caplog.at_level(logging.INFO, logger="resumeledger"):
        log_event("warning", "payment.rejected", extra={"provider_signature": "abc123", "provider_order_id": "order_1"})

    [record] = [r for r in caplog.records if r.getMessage() == "payment.rejected"]
    assert record.provider_signature == "<redacted>"
    assert record.provider_order_id == "order_1"
