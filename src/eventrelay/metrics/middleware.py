"""Prometheus metrics middleware for the EventRelay API."""

import re
import time
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from eventrelay.metrics.definitions import REQUEST_DURATION, REQUEST_TOTAL

_UUID_SEGMENT = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

# Probes and the scrape endpoint itself
EXCLUDED_PATHS = frozenset({"/metrics", "/api/v1/health", "/api/v1/ready"})


def endpoint_label(request: Request) -> str:
    """Label a request by its route template.

    Requests that matched no route (404s, 405s) keep their raw path, with
    tenant, subscription and outbox ids collapsed to ``{id}``, so a scan of
    ``/api/v1/tenants/<uuid>/...`` cannot grow one series per tenant.
    """
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return route.path

    segments = [
        "{id}" if _UUID_SEGMENT.match(segment) else segment
        for segment in request.url.path.rstrip("/").split("/")
    ]
    return "/".join(segments) or "/"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts API requests and their latency.

    Metrics collected:
    - eventrelay_requests_total: by method, endpoint template and status
    - eventrelay_request_duration_seconds: by method and endpoint template
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response: Response = await call_next(request)
        duration = time.perf_counter() - start_time

        endpoint = endpoint_label(request)
        REQUEST_TOTAL.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(duration)
        return response
