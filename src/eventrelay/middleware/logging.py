"""Access logging for the EventRelay API."""

import logging
import time
import uuid
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("eventrelay.access")

REQUEST_ID_HEADER = "X-Request-ID"


def client_address(request: Request) -> str:
    """First address of ``X-Forwarded-For``, else the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Writes one access log line per API request.

    The line carries the tenant the request was routed to (``-`` for
    tenant-less routes such as health checks), so a tenant's retries and
    subscription changes can be followed in the log. Each request gets an
    ``X-Request-ID``, taken from the caller when present, echoed on the
    response. The root API key is a shared secret, so only its presence is
    logged.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex

        response: Response = await call_next(request)
        process_time_ms = (time.perf_counter() - start_time) * 1000

        # Routing fills in path params on the shared scope
        tenant_id = request.path_params.get("tenant_id", "-")
        logger.info(
            "%s %s %s %d %.2fms tenant=%s key=%s request_id=%s",
            client_address(request),
            request.method,
            request.url.path,
            response.status_code,
            process_time_ms,
            tenant_id,
            "yes" if request.headers.get("X-API-Key") else "no",
            request_id,
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time-Ms"] = f"{process_time_ms:.2f}"
        return response
