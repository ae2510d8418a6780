"""Event fan-out into the webhook outbox."""

import logging
import secrets
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import Settings, get_settings
from eventrelay.db.enums import WebhookEventType
from eventrelay.db.models import WebhookOutboxEntry, WebhookSubscription, utcnow
from eventrelay.metrics.definitions import EVENTS_PUBLISHED_TOTAL
from eventrelay.webhook.outbox import create_outbox_entry, enqueue_delivery_trigger

logger = logging.getLogger(__name__)


def generate_event_id() -> str:
    """Globally unique event id, sent to receivers as ``X-Webhook-Id``."""
    return f"evt_{secrets.token_hex(16)}"


def build_envelope(
    event_id: str,
    event_type: WebhookEventType,
    tenant_id: uuid.UUID,
    data: Any,
    created_at: datetime | None = None,
) -> dict[str, Any]:
    """The JSON document POSTed to subscribers."""
    created_at = created_at or utcnow()
    return {
        "id": event_id,
        "type": event_type.value,
        "tenantId": str(tenant_id),
        "createdAt": created_at.isoformat().replace("+00:00", "Z"),
        "data": data,
    }


async def publish_event(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    event_type: WebhookEventType | str,
    data: Any,
    settings: Settings | None = None,
) -> list[WebhookOutboxEntry]:
    """Fan an event out to every active subscription of the tenant that wants it.

    Writes one outbox row per matching subscription, each with its own event
    id, then queues a ``webhook_deliver`` trigger. Everything happens in the
    caller's transaction, so the event is durable exactly when the business
    change that produced it commits.

    Args:
        session: Database session (tenant scoped)
        tenant_id: Publishing tenant
        event_type: One of the WebhookEventType values
        data: JSON-serializable event data
        settings: Application settings

    Returns:
        The created outbox rows (empty if nothing subscribes)

    Raises:
        ValueError: If the event type is unknown
    """
    settings = settings or get_settings()
    event_type = WebhookEventType(event_type)

    stmt = (
        select(WebhookSubscription)
        .where(
            WebhookSubscription.tenant_id == tenant_id,
            WebhookSubscription.is_active.is_(True),
        )
        .order_by(WebhookSubscription.created_at, WebhookSubscription.id)
    )
    subscriptions = (await session.execute(stmt)).scalars().all()
    # event_types is a JSON array, matched here for portability across dialects
    matching = [s for s in subscriptions if event_type.value in (s.event_types or [])]

    entries = []
    for subscription in matching:
        envelope = build_envelope(generate_event_id(), event_type, tenant_id, data)
        entry = await create_outbox_entry(
            session, tenant_id, subscription.id, event_type, envelope
        )
        entries.append(entry)

    EVENTS_PUBLISHED_TOTAL.labels(event_type=event_type.value).inc()

    if not entries:
        logger.debug(f"No subscriptions for {event_type.value} in tenant {tenant_id}")
        return entries

    await enqueue_delivery_trigger(session, tenant_id, settings=settings)
    logger.info(
        f"Published {event_type.value} for tenant {tenant_id} to {len(entries)} subscriptions"
    )
    return entries
