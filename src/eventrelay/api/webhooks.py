"""Webhook subscription, outbox and event publishing endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from eventrelay.api.dependencies import TenantSession, Vault
from eventrelay.config import Settings, get_settings
from eventrelay.schemas import (
    DeliveryResponse,
    EventPublishRequest,
    EventPublishResponse,
    MessageResponse,
    OutboxEntryResponse,
    OutboxFilter,
    OutboxListResponse,
    SubscriptionCreate,
    SubscriptionCreatedResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionUpdate,
)
from eventrelay.webhook.outbox import (
    get_outbox_entry,
    list_deliveries,
    list_outbox_entries,
    retry_outbox_entry,
)
from eventrelay.webhook.publisher import publish_event
from eventrelay.webhook.subscriptions import (
    create_subscription,
    delete_subscription,
    get_subscription,
    list_subscriptions,
    update_subscription,
)

router = APIRouter(prefix="/tenants/{tenant_id}", tags=["webhooks"])


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{what} not found")


# Subscriptions


@router.get("/webhooks/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions_endpoint(
    tenant_id: uuid.UUID,
    session: TenantSession,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> SubscriptionListResponse:
    """List the tenant's webhook subscriptions."""
    subscriptions, total = await list_subscriptions(session, tenant_id, limit, offset)
    return SubscriptionListResponse(
        items=[SubscriptionResponse.model_validate(s) for s in subscriptions],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/webhooks/subscriptions",
    response_model=SubscriptionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription_endpoint(
    tenant_id: uuid.UUID,
    data: SubscriptionCreate,
    session: TenantSession,
    vault: Vault,
    settings: Settings = Depends(get_settings),
) -> SubscriptionCreatedResponse:
    """Create a subscription. The signing secret is returned only in this response."""
    subscription, secret = await create_subscription(
        session,
        tenant_id,
        data.name,
        data.url,
        data.event_types,
        vault,
        settings=settings,
    )

    response = SubscriptionResponse.model_validate(subscription)
    return SubscriptionCreatedResponse(**response.model_dump(), secret=secret)


@router.get("/webhooks/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription_endpoint(
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
    session: TenantSession,
) -> SubscriptionResponse:
    """Get a webhook subscription."""
    subscription = await get_subscription(session, tenant_id, subscription_id)
    if subscription is None:
        raise _not_found("Subscription")
    return SubscriptionResponse.model_validate(subscription)


@router.patch("/webhooks/subscriptions/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription_endpoint(
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
    data: SubscriptionUpdate,
    session: TenantSession,
    settings: Settings = Depends(get_settings),
) -> SubscriptionResponse:
    """Update a webhook subscription."""
    subscription = await update_subscription(
        session,
        tenant_id,
        subscription_id,
        name=data.name,
        url=data.url,
        event_types=data.event_types,
        is_active=data.is_active,
        settings=settings,
    )

    if subscription is None:
        raise _not_found("Subscription")
    return SubscriptionResponse.model_validate(subscription)


@router.delete(
    "/webhooks/subscriptions/{subscription_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_subscription_endpoint(
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
    session: TenantSession,
) -> None:
    """Delete a subscription and its delivery history."""
    if not await delete_subscription(session, tenant_id, subscription_id):
        raise _not_found("Subscription")


# Outbox


@router.get("/webhooks/outbox", response_model=OutboxListResponse)
async def list_outbox_endpoint(
    tenant_id: uuid.UUID,
    session: TenantSession,
    filters: OutboxFilter = Depends(),
) -> OutboxListResponse:
    """List outbox entries, newest first."""
    entries, total = await list_outbox_entries(
        session,
        tenant_id,
        status=filters.status,
        event_type=filters.event_type,
        subscription_id=filters.subscription_id,
        limit=filters.limit,
        offset=filters.offset,
    )
    return OutboxListResponse(
        items=[OutboxEntryResponse.model_validate(e) for e in entries],
        total=total,
        limit=filters.limit,
        offset=filters.offset,
    )


@router.get("/webhooks/outbox/{outbox_id}/deliveries", response_model=list[DeliveryResponse])
async def list_deliveries_endpoint(
    tenant_id: uuid.UUID,
    outbox_id: uuid.UUID,
    session: TenantSession,
) -> list[DeliveryResponse]:
    """List the delivery attempts of an outbox entry, newest first."""
    if await get_outbox_entry(session, tenant_id, outbox_id) is None:
        raise _not_found("Outbox entry")
    deliveries = await list_deliveries(session, tenant_id, outbox_id)
    return [DeliveryResponse.model_validate(d) for d in deliveries]


@router.post("/webhooks/outbox/{outbox_id}/retry", response_model=MessageResponse)
async def retry_outbox_endpoint(
    tenant_id: uuid.UUID,
    outbox_id: uuid.UUID,
    session: TenantSession,
    response: Response,
    settings: Settings = Depends(get_settings),
) -> MessageResponse:
    """Send a dead-lettered entry back for delivery.

    Responds 409 (without raising, so the attempt still counts against the
    tenant's retry budget) when the entry is missing or not dead-lettered.
    An exhausted budget raises RateLimitExceeded, answered with 429.
    """
    retried = await retry_outbox_entry(session, tenant_id, outbox_id, settings=settings)

    if not retried:
        response.status_code = status.HTTP_409_CONFLICT
        return MessageResponse(message=f"Outbox entry {outbox_id} is not in dead_letter")
    return MessageResponse(message=f"Outbox entry {outbox_id} queued for retry")


# Events


@router.post(
    "/events",
    response_model=EventPublishResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def publish_event_endpoint(
    tenant_id: uuid.UUID,
    data: EventPublishRequest,
    session: TenantSession,
    settings: Settings = Depends(get_settings),
) -> EventPublishResponse:
    """Publish an event to the tenant's matching subscriptions."""
    entries = await publish_event(session, tenant_id, data.type, data.data, settings=settings)
    return EventPublishResponse(
        event_ids=[e.event_id for e in entries],
        outbox_ids=[e.id for e in entries],
    )
