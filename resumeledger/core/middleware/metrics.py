from starlette.middleware.base import BaseHTTPMiddleware

from resumeledger.core.metrics import http_requests_total, normalize_path

# Probe and scrape traffic would drown out ledger calls
UNCOUNTED_PATHS = frozenset({"/metrics", "/healthz", "/readyz"})


def route_label(request) -> str:
    """Route template when the router matched one, else the id-collapsed path."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template or normalize_path(request.url.path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Count HTTP requests per method, route and status."""

    async def dispatch(self, request, call_next):
        response = await call_next(request)
        if request.url.path not in UNCOUNTED_PATHS:
            http_requests_total.inc(labels={
                "method": request.method.upper(),
                "path": route_label(request),
                "status": str(response.status_code),
            })
        return response
