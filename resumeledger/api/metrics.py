"""Prometheus scrape endpoint for HTTP and ledger counters."""
from fastapi import APIRouter, Response

from resumeledger.core.metrics import METRICS

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics_endpoint() -> Response:
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
