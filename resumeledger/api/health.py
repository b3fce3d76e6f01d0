"""
Health endpoints.

Lightweight liveness/readiness probes without exposing secrets.
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from resumeledger.core.database import check_connection, missing_tables

logger = logging.getLogger("resumeledger")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + ledger tables."""
    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    missing = missing_tables()
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}
