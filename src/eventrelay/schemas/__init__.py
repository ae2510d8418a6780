"""Pydantic schemas for API request/response validation."""

from eventrelay.schemas.common import (
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    OutboxStats,
    ReadyResponse,
)
from eventrelay.schemas.job import JobListResponse, JobResponse
from eventrelay.schemas.webhook import (
    DeliveryResponse,
    EventPublishRequest,
    EventPublishResponse,
    OutboxEntryResponse,
    OutboxFilter,
    OutboxListResponse,
    SubscriptionCreate,
    SubscriptionCreatedResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdate,
)

__all__ = [
    "DeliveryResponse",
    "ErrorResponse",
    "EventPublishRequest",
    "EventPublishResponse",
    "HealthResponse",
    "JobListResponse",
    "JobResponse",
    "MessageResponse",
    "OutboxEntryResponse",
    "OutboxFilter",
    "OutboxListResponse",
    "OutboxStats",
    "ReadyResponse",
    "SubscriptionCreate",
    "SubscriptionCreatedResponse",
    "SubscriptionListResponse",
    "SubscriptionResponse",
    "SubscriptionUpdate",
]
