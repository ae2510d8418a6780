"""Webhook subscriptions, outbox and delivery."""

from eventrelay.webhook.dispatcher import DeliveryWorker, SendResult, send_webhook
from eventrelay.webhook.outbox import (
    ClaimedDelivery,
    claim_next_entry,
    enqueue_delivery_trigger,
    get_outbox_entry,
    get_outbox_stats,
    list_deliveries,
    list_outbox_entries,
    mark_delivered,
    mark_failed,
    reap_stuck_outbox_entries,
    retry_outbox_entry,
)
from eventrelay.webhook.publisher import publish_event
from eventrelay.webhook.signing import verify_signature
from eventrelay.webhook.url_validator import (
    HostResolutionError,
    SSRFError,
    URLValidationError,
    is_url_safe,
    validate_webhook_url,
)

__all__ = [
    "ClaimedDelivery",
    "DeliveryWorker",
    "HostResolutionError",
    "SSRFError",
    "SendResult",
    "URLValidationError",
    "claim_next_entry",
    "enqueue_delivery_trigger",
    "get_outbox_entry",
    "get_outbox_stats",
    "is_url_safe",
    "list_deliveries",
    "list_outbox_entries",
    "mark_delivered",
    "mark_failed",
    "publish_event",
    "reap_stuck_outbox_entries",
    "retry_outbox_entry",
    "send_webhook",
    "validate_webhook_url",
    "verify_signature",
]
