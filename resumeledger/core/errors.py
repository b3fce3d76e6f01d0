"""Error taxonomy and FastAPI handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from resumeledger.core.logging import get_request_id

PAYMENT_NOT_VERIFIED_MESSAGE = "Payment could not be verified"


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


# Pricing and coupon errors: recoverable, surfaced to the user as-is

class UnknownPlan(ValidationError):
    code = "unknown_plan"


class UnknownAddOn(ValidationError):
    code = "unknown_addon"


class CouponAlreadyUsed(ConflictError):
    code = "coupon_already_used"


class CouponNotApplicable(ValidationError):
    code = "coupon_not_applicable"


class CouponLimitReached(ConflictError):
    code = "coupon_limit_reached"


class TamperingError(AppError):
    """Potential tampering: details go to logs, the client gets a generic message."""

    code = "payment_not_verified"
    status_code = 400

    def __init__(self, detail: str, *, context: Optional[Dict[str, Any]] = None, request_id: Optional[str] = None):
        super().__init__(PAYMENT_NOT_VERIFIED_MESSAGE, request_id=request_id)
        self.detail = detail
        self.context = context or {}

    def __str__(self) -> str:
        return self.detail


class PriceIntegrityError(TamperingError):
    pass


class InvalidSignature(TamperingError):
    pass


class GatewayUnavailable(AppError):
    code = "gateway_unavailable"
    status_code = 502


class NoCreditsRemaining(AppError):
    code = "no_credits_remaining"
    status_code = 402


class TransactionNotFound(NotFoundError):
    code = "transaction_not_found"


class TransactionStateError(ConflictError):
    code = "transaction_conflict"


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    logger = logging.getLogger("resumeledger")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": str(exc), "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("resumeledger")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("resumeledger")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
