"""Webhook subscription management."""

import logging
import uuid
from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.audit import record_audit_log
from eventrelay.config import Settings, get_settings
from eventrelay.crypto import SecretVault
from eventrelay.db.enums import AuditAction, WebhookEventType
from eventrelay.db.models import WebhookSubscription, utcnow
from eventrelay.webhook.signing import generate_secret
from eventrelay.webhook.url_validator import validate_webhook_url_async

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "webhook_subscription"


def normalize_event_types(event_types: Iterable[WebhookEventType | str]) -> list[str]:
    """Validate event types and drop duplicates, keeping order.

    Raises:
        ValueError: If the list is empty or names an unknown type
    """
    values: list[str] = []
    for event_type in event_types:
        value = WebhookEventType(event_type).value
        if value not in values:
            values.append(value)
    if not values:
        raise ValueError("At least one event type is required")
    return values


async def _validate_url(url: str, settings: Settings) -> str:
    return await validate_webhook_url_async(
        url,
        allow_http=settings.webhook_allow_http,
        allowed_internal_domains=settings.webhook_allowed_internal_domains,
    )


async def create_subscription(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    name: str,
    url: str,
    event_types: Iterable[WebhookEventType | str],
    vault: SecretVault,
    *,
    created_by: uuid.UUID | None = None,
    settings: Settings | None = None,
) -> tuple[WebhookSubscription, str]:
    """Create a subscription with a freshly generated signing secret.

    The URL is validated (including DNS) before anything is written. Only the
    encrypted secret is stored.

    Returns:
        Tuple of (subscription, plaintext secret). The plaintext is not
        retrievable later.

    Raises:
        URLValidationError: If the URL is not an allowed webhook target
        ValueError: If the event types are invalid
    """
    settings = settings or get_settings()
    types = normalize_event_types(event_types)
    url = await _validate_url(url, settings)

    secret = generate_secret()
    subscription = WebhookSubscription(
        tenant_id=tenant_id,
        name=name,
        url=url,
        encrypted_secret=vault.encrypt(secret),
        event_types=types,
        is_active=True,
        created_by=created_by,
    )
    session.add(subscription)
    await session.flush()

    await record_audit_log(
        session,
        tenant_id,
        AuditAction.WEBHOOK_SUBSCRIPTION_CREATED,
        resource_type=RESOURCE_TYPE,
        resource_id=subscription.id,
        details={"name": name, "event_types": types},
        user_id=created_by,
    )

    logger.info(f"Created webhook subscription {subscription.id} for tenant {tenant_id}")
    return subscription, secret


async def get_subscription(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
) -> WebhookSubscription | None:
    stmt = select(WebhookSubscription).where(
        WebhookSubscription.id == subscription_id,
        WebhookSubscription.tenant_id == tenant_id,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_subscriptions(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookSubscription], int]:
    """List a tenant's subscriptions, newest first."""
    count_stmt = (
        select(func.count())
        .select_from(WebhookSubscription)
        .where(WebhookSubscription.tenant_id == tenant_id)
    )
    total = (await session.execute(count_stmt)).scalar() or 0

    stmt = (
        select(WebhookSubscription)
        .where(WebhookSubscription.tenant_id == tenant_id)
        .order_by(WebhookSubscription.created_at.desc(), WebhookSubscription.id)
        .limit(limit)
        .offset(offset)
    )
    subscriptions = list((await session.execute(stmt)).scalars().all())
    return subscriptions, total


async def update_subscription(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
    *,
    name: str | None = None,
    url: str | None = None,
    event_types: Iterable[WebhookEventType | str] | None = None,
    is_active: bool | None = None,
    user_id: uuid.UUID | None = None,
    settings: Settings | None = None,
) -> WebhookSubscription | None:
    """Apply a partial update. A changed URL is validated again.

    Returns:
        The updated subscription, or None if it does not exist.

    Raises:
        URLValidationError: If the new URL is not an allowed webhook target
        ValueError: If the new event types are invalid
    """
    settings = settings or get_settings()

    subscription = await get_subscription(session, tenant_id, subscription_id)
    if subscription is None:
        return None

    changes: dict[str, object] = {}
    if name is not None:
        subscription.name = name
        changes["name"] = name
    if url is not None and url != subscription.url:
        subscription.url = await _validate_url(url, settings)
        changes["url"] = subscription.url
    if event_types is not None:
        subscription.event_types = normalize_event_types(event_types)
        changes["event_types"] = subscription.event_types
    if is_active is not None:
        subscription.is_active = is_active
        changes["is_active"] = is_active

    if changes:
        subscription.updated_at = utcnow()
        await session.flush()
        await record_audit_log(
            session,
            tenant_id,
            AuditAction.WEBHOOK_SUBSCRIPTION_UPDATED,
            resource_type=RESOURCE_TYPE,
            resource_id=subscription.id,
            details=changes,
            user_id=user_id,
        )
        logger.info(f"Updated webhook subscription {subscription.id}: {sorted(changes)}")

    return subscription


async def delete_subscription(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
    *,
    user_id: uuid.UUID | None = None,
) -> bool:
    """Delete a subscription together with its outbox rows and delivery history."""
    stmt = (
        delete(WebhookSubscription)
        .where(
            WebhookSubscription.id == subscription_id,
            WebhookSubscription.tenant_id == tenant_id,
        )
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount != 1:
        return False

    await record_audit_log(
        session,
        tenant_id,
        AuditAction.WEBHOOK_SUBSCRIPTION_DELETED,
        resource_type=RESOURCE_TYPE,
        resource_id=subscription_id,
        user_id=user_id,
    )

    logger.info(f"Deleted webhook subscription {subscription_id}")
    return True
