"""Transactional webhook outbox.

One row per (event, subscription). A row moves
``pending -> processing -> delivered`` on success, or back to ``pending``
with backoff on failure until its attempts run out, when it becomes
``dead_letter``. Only a manual retry brings a dead-lettered row back.

The processing lease (``locked_by``/``locked_at``) works like the job
queue's: transitions out of ``processing`` only apply while the caller still
holds it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.audit import record_audit_log
from eventrelay.backoff import BackoffPolicy
from eventrelay.config import Settings, get_settings
from eventrelay.db.enums import (
    AuditAction,
    AuditSeverity,
    JobType,
    OutboxStatus,
    WebhookEventType,
)
from eventrelay.db.models import (
    BackgroundJob,
    WebhookDelivery,
    WebhookOutboxEntry,
    WebhookSubscription,
    utcnow,
)
from eventrelay.jobs.queue import enqueue_job, find_queued_job
from eventrelay.ratelimit import enforce_rate_limit, retry_rate_limit_key

logger = logging.getLogger(__name__)

REAPED_OUTBOX_MESSAGE = "Delivery timed out and was reclaimed by reaper"
REAPED_EXHAUSTED_MESSAGE = "Delivery timed out on its final attempt and was dead-lettered by reaper"


@dataclass
class ClaimedDelivery:
    """An outbox row claimed for one delivery attempt, joined with its subscription."""

    outbox_id: uuid.UUID
    tenant_id: uuid.UUID
    subscription_id: uuid.UUID
    event_id: str
    event_type: str
    payload: dict[str, Any]
    attempts: int
    url: str
    encrypted_secret: str
    worker_id: str

    @property
    def attempt_number(self) -> int:
        """Number of the attempt this claim is for."""
        return self.attempts + 1


async def create_outbox_entry(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    subscription_id: uuid.UUID,
    event_type: WebhookEventType | str,
    envelope: dict[str, Any],
) -> WebhookOutboxEntry:
    """Insert a pending outbox row that is due immediately."""
    now = utcnow()
    entry = WebhookOutboxEntry(
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        event_type=WebhookEventType(event_type).value,
        event_id=envelope["id"],
        payload=envelope,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        next_retry_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(entry)
    await session.flush()
    return entry


async def enqueue_delivery_trigger(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    *,
    outbox_id: uuid.UUID | None = None,
    run_after: datetime | None = None,
    dedupe: bool = False,
    settings: Settings | None = None,
) -> BackgroundJob:
    """Queue a ``webhook_deliver`` job that drains the tenant's outbox.

    With ``dedupe`` an already queued trigger due no later than ``run_after``
    is returned instead of adding another one.
    """
    settings = settings or get_settings()
    run_after = run_after or utcnow()

    if dedupe:
        existing = await find_queued_job(
            session, tenant_id, JobType.WEBHOOK_DELIVER, not_after=run_after
        )
        if existing is not None:
            return existing

    payload: dict[str, Any] = {"tenant_id": str(tenant_id)}
    if outbox_id is not None:
        payload["outbox_id"] = str(outbox_id)

    return await enqueue_job(
        session,
        tenant_id,
        JobType.WEBHOOK_DELIVER,
        payload,
        priority=settings.webhook_deliver_priority,
        run_after=run_after,
        settings=settings,
    )


async def claim_next_entry(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    worker_id: str,
) -> ClaimedDelivery | None:
    """Claim the tenant's oldest due pending row.

    Only the outbox row is locked (``FOR UPDATE OF webhook_outbox SKIP
    LOCKED``); the status guard on the following UPDATE makes sure a single
    caller wins it.

    Returns:
        The claimed delivery, or None when nothing is due.
    """
    now = utcnow()
    candidate = (
        select(WebhookOutboxEntry.id)
        .join(WebhookSubscription, WebhookOutboxEntry.subscription_id == WebhookSubscription.id)
        .where(
            WebhookOutboxEntry.tenant_id == tenant_id,
            WebhookOutboxEntry.status == OutboxStatus.PENDING.value,
            WebhookOutboxEntry.next_retry_at <= now,
        )
        .order_by(WebhookOutboxEntry.next_retry_at.asc(), WebhookOutboxEntry.created_at.asc())
        .limit(1)
        .with_for_update(skip_locked=True, of=WebhookOutboxEntry)
    )
    outbox_id = (await session.execute(candidate)).scalar_one_or_none()
    if outbox_id is None:
        return None

    claim = (
        update(WebhookOutboxEntry)
        .where(
            WebhookOutboxEntry.id == outbox_id,
            WebhookOutboxEntry.tenant_id == tenant_id,
            WebhookOutboxEntry.status == OutboxStatus.PENDING.value,
        )
        .values(
            status=OutboxStatus.PROCESSING.value,
            locked_by=worker_id,
            locked_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(claim)).rowcount != 1:
        logger.debug(f"Outbox entry {outbox_id} was claimed by another worker")
        return None

    stmt = (
        select(WebhookOutboxEntry, WebhookSubscription.url, WebhookSubscription.encrypted_secret)
        .join(WebhookSubscription, WebhookOutboxEntry.subscription_id == WebhookSubscription.id)
        .where(WebhookOutboxEntry.id == outbox_id)
        .execution_options(populate_existing=True)
    )
    entry, url, encrypted_secret = (await session.execute(stmt)).one()

    return ClaimedDelivery(
        outbox_id=entry.id,
        tenant_id=entry.tenant_id,
        subscription_id=entry.subscription_id,
        event_id=entry.event_id,
        event_type=entry.event_type,
        payload=entry.payload,
        attempts=entry.attempts,
        url=url,
        encrypted_secret=encrypted_secret,
        worker_id=worker_id,
    )


async def record_delivery_attempt(
    session: AsyncSession,
    claim: ClaimedDelivery,
    *,
    success: bool,
    request_headers: dict[str, str] | None = None,
    response_status: int | None = None,
    response_headers: dict[str, str] | None = None,
    response_body: str | None = None,
    error: str | None = None,
    duration_ms: int | None = None,
) -> WebhookDelivery:
    """Append the audit record of one attempt."""
    delivery = WebhookDelivery(
        tenant_id=claim.tenant_id,
        outbox_id=claim.outbox_id,
        request_headers=request_headers,
        request_body=claim.payload,
        response_status=response_status,
        response_headers=response_headers,
        response_body=response_body,
        error=error,
        duration_ms=duration_ms,
        attempt_number=claim.attempt_number,
        success=success,
    )
    session.add(delivery)
    await session.flush()
    return delivery


def _lease_guard(claim: ClaimedDelivery) -> list:
    return [
        WebhookOutboxEntry.id == claim.outbox_id,
        WebhookOutboxEntry.tenant_id == claim.tenant_id,
        WebhookOutboxEntry.status == OutboxStatus.PROCESSING.value,
        WebhookOutboxEntry.locked_by == claim.worker_id,
    ]


async def mark_delivered(session: AsyncSession, claim: ClaimedDelivery) -> bool:
    """Move a claimed row to ``delivered``.

    Returns:
        False if the lease was lost and nothing changed.
    """
    now = utcnow()
    stmt = (
        update(WebhookOutboxEntry)
        .where(*_lease_guard(claim))
        .values(
            status=OutboxStatus.DELIVERED.value,
            attempts=claim.attempt_number,
            delivered_at=now,
            last_attempt_at=now,
            next_retry_at=None,
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    delivered = (await session.execute(stmt)).rowcount == 1
    await session.flush()

    if delivered:
        logger.info(f"Outbox entry {claim.outbox_id} delivered (attempt {claim.attempt_number})")
    else:
        logger.warning(f"Outbox entry {claim.outbox_id} lease lost before delivery was recorded")
    return delivered


async def mark_failed(
    session: AsyncSession,
    claim: ClaimedDelivery,
    error: str,
    *,
    max_attempts: int,
    backoff: BackoffPolicy,
    permanent: bool = False,
) -> OutboxStatus | None:
    """Record a failed attempt and schedule the next one or dead-letter the row.

    ``permanent`` failures skip the remaining attempts: the attempt count is
    raised to ``max_attempts`` so a dead-lettered row always shows a spent
    budget.

    Returns:
        The row's new status, or None if the lease was lost.
    """
    now = utcnow()
    attempts = claim.attempt_number

    values: dict[str, Any] = {
        "last_attempt_at": now,
        "last_error": error,
        "locked_by": None,
        "locked_at": None,
        "updated_at": now,
    }
    if permanent or attempts >= max_attempts:
        new_status = OutboxStatus.DEAD_LETTER
        values["attempts"] = max(attempts, max_attempts)
        values["next_retry_at"] = None
    else:
        new_status = OutboxStatus.PENDING
        values["attempts"] = attempts
        values["next_retry_at"] = backoff.next_run_at(attempts, now)
    values["status"] = new_status.value

    stmt = (
        update(WebhookOutboxEntry)
        .where(*_lease_guard(claim))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount != 1:
        await session.flush()
        logger.warning(f"Outbox entry {claim.outbox_id} lease lost before failure was recorded")
        return None
    await session.flush()

    if new_status == OutboxStatus.DEAD_LETTER:
        logger.warning(
            f"Outbox entry {claim.outbox_id} dead-lettered after {values['attempts']} attempts: "
            f"{error}"
        )
    else:
        logger.info(
            f"Outbox entry {claim.outbox_id} failed (attempt {attempts}), "
            f"next retry at {values['next_retry_at']}: {error}"
        )
    return new_status


async def retry_outbox_entry(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    outbox_id: uuid.UUID,
    *,
    user_id: uuid.UUID | None = None,
    settings: Settings | None = None,
) -> bool:
    """Send a dead-lettered row back into the pipeline.

    Resets the attempt budget, makes the row due now and queues a delivery
    trigger. Rate limited per tenant.

    Returns:
        False if the row does not exist or is not dead-lettered.

    Raises:
        RateLimitExceeded: If the tenant's retry budget for the window is spent
    """
    settings = settings or get_settings()

    await enforce_rate_limit(
        session,
        retry_rate_limit_key(tenant_id),
        settings.retry_rate_limit_requests,
        settings.retry_rate_limit_window_seconds,
    )

    now = utcnow()
    stmt = (
        update(WebhookOutboxEntry)
        .where(
            WebhookOutboxEntry.id == outbox_id,
            WebhookOutboxEntry.tenant_id == tenant_id,
            WebhookOutboxEntry.status == OutboxStatus.DEAD_LETTER.value,
        )
        .values(
            status=OutboxStatus.PENDING.value,
            attempts=0,
            next_retry_at=now,
            locked_by=None,
            locked_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount != 1:
        logger.info(f"Outbox entry {outbox_id} not retried: not found or not dead-lettered")
        return False

    await enqueue_delivery_trigger(session, tenant_id, outbox_id=outbox_id, settings=settings)
    await record_audit_log(
        session,
        tenant_id,
        AuditAction.WEBHOOK_RETRY_REQUESTED,
        resource_type="webhook_outbox",
        resource_id=outbox_id,
        user_id=user_id,
    )

    logger.info(f"Outbox entry {outbox_id} queued for manual retry")
    return True


async def get_outbox_entry(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    outbox_id: uuid.UUID,
) -> WebhookOutboxEntry | None:
    """Fetch one outbox row of a tenant."""
    stmt = select(WebhookOutboxEntry).where(
        WebhookOutboxEntry.id == outbox_id,
        WebhookOutboxEntry.tenant_id == tenant_id,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_outbox_entries(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    status: OutboxStatus | str | None = None,
    event_type: WebhookEventType | str | None = None,
    subscription_id: uuid.UUID | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[WebhookOutboxEntry], int]:
    """List a tenant's outbox rows, newest first.

    Returns:
        Tuple of (entries, total matching count)
    """
    conditions = [WebhookOutboxEntry.tenant_id == tenant_id]
    if status is not None:
        conditions.append(WebhookOutboxEntry.status == OutboxStatus(status).value)
    if event_type is not None:
        conditions.append(WebhookOutboxEntry.event_type == WebhookEventType(event_type).value)
    if subscription_id is not None:
        conditions.append(WebhookOutboxEntry.subscription_id == subscription_id)

    count_stmt = select(func.count()).select_from(WebhookOutboxEntry).where(*conditions)
    total = (await session.execute(count_stmt)).scalar() or 0

    stmt = (
        select(WebhookOutboxEntry)
        .where(*conditions)
        .order_by(WebhookOutboxEntry.created_at.desc(), WebhookOutboxEntry.id)
        .limit(limit)
        .offset(offset)
    )
    entries = list((await session.execute(stmt)).scalars().all())
    return entries, total


async def list_deliveries(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    outbox_id: uuid.UUID,
) -> list[WebhookDelivery]:
    """Delivery attempts of one outbox row, newest first."""
    stmt = (
        select(WebhookDelivery)
        .where(
            WebhookDelivery.outbox_id == outbox_id,
            WebhookDelivery.tenant_id == tenant_id,
        )
        .order_by(WebhookDelivery.attempt_number.desc(), WebhookDelivery.created_at.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def get_outbox_stats(
    session: AsyncSession,
    tenant_id: uuid.UUID | None = None,
) -> dict[str, int]:
    """Count outbox rows per status, every status present."""
    stmt = select(WebhookOutboxEntry.status, func.count()).group_by(WebhookOutboxEntry.status)
    if tenant_id is not None:
        stmt = stmt.where(WebhookOutboxEntry.tenant_id == tenant_id)

    counts = {status.value: 0 for status in OutboxStatus}
    for status, count in (await session.execute(stmt)).all():
        counts[status] = count
    return counts


async def next_pending_retry_at(
    session: AsyncSession,
    tenant_id: uuid.UUID,
) -> datetime | None:
    """Earliest ``next_retry_at`` among the tenant's pending rows."""
    stmt = select(func.min(WebhookOutboxEntry.next_retry_at)).where(
        WebhookOutboxEntry.tenant_id == tenant_id,
        WebhookOutboxEntry.status == OutboxStatus.PENDING.value,
    )
    return (await session.execute(stmt)).scalar()


async def reap_stuck_outbox_entries(
    session: AsyncSession,
    threshold_seconds: int,
    max_attempts: int | None = None,
    tenant_id: uuid.UUID | None = None,
) -> int:
    """Reclaim outbox rows whose delivering worker is presumed dead.

    The interrupted attempt counts against the row's budget, so a row whose
    delivery keeps killing the worker still ends up dead-lettered. Rows with
    attempts left go back to ``pending``, due now; the rest become
    ``dead_letter`` with an audit entry.

    Args:
        session: Database session
        threshold_seconds: Lease age after which a row counts as stuck
        max_attempts: Attempt budget (``webhook_max_attempts`` if None)
        tenant_id: Restrict to one tenant (all tenants if None)

    Returns:
        Number of rows reclaimed
    """
    if max_attempts is None:
        max_attempts = get_settings().webhook_max_attempts
    now = utcnow()
    cutoff = now - timedelta(seconds=threshold_seconds)

    conditions = [
        WebhookOutboxEntry.status == OutboxStatus.PROCESSING.value,
        WebhookOutboxEntry.locked_at <= cutoff,
    ]
    if tenant_id is not None:
        conditions.append(WebhookOutboxEntry.tenant_id == tenant_id)

    requeue = (
        update(WebhookOutboxEntry)
        .where(*conditions, WebhookOutboxEntry.attempts + 1 < max_attempts)
        .values(
            status=OutboxStatus.PENDING.value,
            attempts=WebhookOutboxEntry.attempts + 1,
            next_retry_at=now,
            locked_by=None,
            locked_at=None,
            last_error=REAPED_OUTBOX_MESSAGE,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    exhausted = (
        update(WebhookOutboxEntry)
        .where(*conditions, WebhookOutboxEntry.attempts + 1 >= max_attempts)
        .values(
            status=OutboxStatus.DEAD_LETTER.value,
            attempts=WebhookOutboxEntry.attempts + 1,
            next_retry_at=None,
            locked_by=None,
            locked_at=None,
            last_error=REAPED_EXHAUSTED_MESSAGE,
            updated_at=now,
        )
        .returning(
            WebhookOutboxEntry.id,
            WebhookOutboxEntry.tenant_id,
            WebhookOutboxEntry.event_id,
            WebhookOutboxEntry.subscription_id,
            WebhookOutboxEntry.attempts,
        )
        .execution_options(synchronize_session=False)
    )
    requeued = (await session.execute(requeue)).rowcount
    dead = (await session.execute(exhausted)).all()

    for outbox_id, row_tenant_id, event_id, subscription_id, attempts in dead:
        await record_audit_log(
            session,
            row_tenant_id,
            AuditAction.WEBHOOK_FAILED,
            severity=AuditSeverity.ERROR,
            resource_type="webhook_outbox",
            resource_id=outbox_id,
            details={
                "event_id": event_id,
                "subscription_id": str(subscription_id),
                "attempts": attempts,
                "error": REAPED_EXHAUSTED_MESSAGE,
            },
        )
    await session.flush()

    reaped = requeued + len(dead)
    if reaped:
        logger.info(
            f"Reaper reclaimed {reaped} stuck outbox entries "
            f"({requeued} requeued, {len(dead)} dead-lettered)"
        )
    return reaped
