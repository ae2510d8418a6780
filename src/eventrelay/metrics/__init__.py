"""EventRelay Prometheus metrics."""

from eventrelay.metrics.definitions import (
    EVENTS_PUBLISHED_TOTAL,
    JOBS_FINISHED_TOTAL,
    OUTBOX_DEPTH,
    REAPED_TOTAL,
    REQUEST_DURATION,
    REQUEST_TOTAL,
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
)
from eventrelay.metrics.middleware import MetricsMiddleware

__all__ = [
    "MetricsMiddleware",
    "REQUEST_TOTAL",
    "REQUEST_DURATION",
    "WEBHOOK_DELIVERIES_TOTAL",
    "WEBHOOK_DELIVERY_DURATION",
    "EVENTS_PUBLISHED_TOTAL",
    "JOBS_FINISHED_TOTAL",
    "REAPED_TOTAL",
    "OUTBOX_DEPTH",
]
