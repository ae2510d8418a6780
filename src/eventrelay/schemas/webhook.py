"""Webhook subscription, outbox and event Pydantic schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from eventrelay.db.enums import OutboxStatus, WebhookEventType


class SubscriptionCreate(BaseModel):
    """Schema for creating a webhook subscription."""

    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    event_types: list[WebhookEventType] = Field(..., min_length=1)


class SubscriptionUpdate(BaseModel):
    """Schema for updating a webhook subscription. Omitted fields are unchanged."""

    name: str | None = Field(None, min_length=1, max_length=255)
    url: str | None = Field(None, min_length=1, max_length=2048)
    event_types: list[WebhookEventType] | None = Field(None, min_length=1)
    is_active: bool | None = None


class SubscriptionResponse(BaseModel):
    """Schema for subscription response. The signing secret is never included."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    name: str
    url: str
    event_types: list[str]
    is_active: bool
    created_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class SubscriptionCreatedResponse(SubscriptionResponse):
    """Creation response, the only place the plaintext secret appears."""

    secret: str


class SubscriptionListResponse(BaseModel):
    """Paged list of subscriptions."""

    items: list[SubscriptionResponse]
    total: int
    limit: int
    offset: int


class OutboxEntryResponse(BaseModel):
    """Schema for webhook outbox entry response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    subscription_id: uuid.UUID
    event_type: str
    event_id: str
    payload: dict[str, Any]
    status: str
    attempts: int
    next_retry_at: datetime | None
    last_attempt_at: datetime | None
    last_error: str | None
    created_at: datetime
    delivered_at: datetime | None


class OutboxListResponse(BaseModel):
    """Paged list of outbox entries."""

    items: list[OutboxEntryResponse]
    total: int
    limit: int
    offset: int


class OutboxFilter(BaseModel):
    """Schema for filtering outbox entries."""

    status: OutboxStatus | None = Field(None, description="Filter by status")
    event_type: WebhookEventType | None = Field(None, description="Filter by event type")
    subscription_id: uuid.UUID | None = Field(None, description="Filter by subscription")
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class DeliveryResponse(BaseModel):
    """Schema for one delivery attempt."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    outbox_id: uuid.UUID
    request_headers: dict[str, Any] | None
    request_body: dict[str, Any] | None
    response_status: int | None
    response_headers: dict[str, Any] | None
    response_body: str | None
    error: str | None
    duration_ms: int | None
    attempt_number: int
    success: bool
    created_at: datetime


class EventPublishRequest(BaseModel):
    """Schema for publishing an event."""

    type: WebhookEventType
    data: dict[str, Any] = Field(default_factory=dict)


class EventPublishResponse(BaseModel):
    """Schema for publish response."""

    event_ids: list[str]
    outbox_ids: list[uuid.UUID]
