"""
Structured logging for the ledger.

JSON lines in production, one readable line per record elsewhere. Every
record picks up the request_id bound by RequestIdMiddleware, and ledger
records carry user_id / transaction_id / event_type so a payment can be
followed from order creation to settlement.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOGGER_NAME = "resumeledger"

# Record attributes promoted to top-level JSON keys when set
LEDGER_FIELDS = (
    "user_id",
    "transaction_id",
    "event_type",
    "error_code",
    "status",
    "path",
    "method",
    "latency_bucket",
)

# Gateway and auth values that must never reach a log sink
_REDACTED_KEYS = frozenset({"provider_signature", "signature", "key_secret", "authorization", "token"})

_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class RequestIdFilter(logging.Filter):
    """Inject request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for name in LEDGER_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    """Human-readable line with the ledger fields appended as key=value."""

    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        head = f"{_utc_timestamp(record)} {record.levelname:<7} [{record.name}]"
        if rid:
            head += f" [rid={rid}]"
        tail = " ".join(
            f"{name}={getattr(record, name)}"
            for name in LEDGER_FIELDS
            if getattr(record, name, None) is not None
        )
        line = f"{head} {record.getMessage()}"
        if tail:
            line = f"{line} | {tail}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install the ledger handler on the resumeledger logger tree."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _loggable(key: str, value, limit: int = 500) -> str:
    if key.lower() in _REDACTED_KEYS:
        return "<redacted>"
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Emit one structured ledger record.

    Values in ``extra`` are stringified, truncated, and redacted when the key
    names a signature or credential.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "transaction_id": transaction_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    payload = {k: v for k, v in fields.items() if v is not None}
    for key, value in (extra or {}).items():
        payload[key] = _loggable(key, value)

    getattr(logger, level, logger.info)(msg, extra=payload)
