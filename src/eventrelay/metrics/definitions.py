"""Prometheus metrics definitions for EventRelay."""

from prometheus_client import Counter, Gauge, Histogram

# HTTP Request metrics
REQUEST_TOTAL = Counter(
    "eventrelay_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "eventrelay_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Webhook delivery metrics
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "eventrelay_webhook_deliveries_total",
    "Total webhook delivery attempts",
    ["status"],  # delivered, retry, dead_letter
)

WEBHOOK_DELIVERY_DURATION = Histogram(
    "eventrelay_webhook_delivery_duration_seconds",
    "Webhook delivery duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

EVENTS_PUBLISHED_TOTAL = Counter(
    "eventrelay_events_published_total",
    "Events published, by event type",
    ["event_type"],
)

# Background job metrics
JOBS_FINISHED_TOTAL = Counter(
    "eventrelay_jobs_finished_total",
    "Background jobs finished by a worker",
    ["type", "outcome"],  # outcome: succeeded, retry, failed, lease_lost
)

REAPED_TOTAL = Counter(
    "eventrelay_reaped_total",
    "Rows reclaimed from crashed workers",
    ["kind"],  # job, outbox
)

# Queue metrics
OUTBOX_DEPTH = Gauge(
    "eventrelay_outbox_depth",
    "Number of webhook outbox entries",
    ["status"],  # pending, processing, delivered, dead_letter
)
