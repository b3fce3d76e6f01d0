"""Sweep job: fail abandoned pending transactions past their TTL."""
import logging

from resumeledger.core.config import settings
from resumeledger.core.database import utc_now
from resumeledger.features.orders.reconcile_job import run_reconcile_job

logger = logging.getLogger("resumeledger.workers.sweep_pending")


def sweep_pending(
    *,
    ttl_minutes: int | None = None,
    dry_run: bool = False,
    limit: int = 500,
) -> dict:
    ttl = ttl_minutes if ttl_minutes is not None else settings.PENDING_TRANSACTION_TTL_MINUTES
    result = run_reconcile_job(utc_now(), fix=not dry_run, ttl_minutes=ttl, limit=limit)
    logger.info(
        "[sweep] stale pending transactions",
        extra={"ttl_minutes": ttl, "dry_run": dry_run, "candidates": result["issues_found"], "failed": result["corrections_applied"]},
    )
    return {
        "ttl_minutes": ttl,
        "dry_run": dry_run,
        "candidates": result["issues_found"],
        "failed": result["corrections_applied"],
    }


if __name__ == "__main__":
    from resumeledger.core.logging import configure_logging

    configure_logging(settings.ENV)
    print(sweep_pending())
