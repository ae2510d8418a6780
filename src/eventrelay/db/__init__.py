"""Database module."""

from eventrelay.db.models import (
    AuditLog,
    BackgroundJob,
    Base,
    RateLimitBucket,
    WebhookDelivery,
    WebhookOutboxEntry,
    WebhookSubscription,
)
from eventrelay.db.session import async_session, get_session, tenant_session

__all__ = [
    "AuditLog",
    "BackgroundJob",
    "Base",
    "RateLimitBucket",
    "WebhookDelivery",
    "WebhookOutboxEntry",
    "WebhookSubscription",
    "async_session",
    "get_session",
    "tenant_session",
]
