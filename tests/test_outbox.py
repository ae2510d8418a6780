"""Tests for the outbox state machine, manual retry and rate limiting."""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from eventrelay.backoff import BackoffPolicy
from eventrelay.db.enums import AuditAction, JobType, OutboxStatus
from eventrelay.db.models import AuditLog, utcnow
from eventrelay.db.session import tenant_session
from eventrelay.jobs.queue import list_jobs
from eventrelay.ratelimit import (
    RateLimitExceeded,
    check_rate_limit,
    retry_rate_limit_key,
)
from eventrelay.webhook.outbox import (
    claim_next_entry,
    get_outbox_entry,
    get_outbox_stats,
    list_outbox_entries,
    mark_delivered,
    mark_failed,
    next_pending_retry_at,
    reap_stuck_outbox_entries,
    retry_outbox_entry,
)
from eventrelay.webhook.publisher import publish_event

BACKOFF = BackoffPolicy(base=1.0, cap=300.0, jitter=0.0)


@pytest.fixture
def published(make_subscription, session_factory, test_settings, tenant_id):
    """Publish one event to one subscription and return its outbox row."""

    subscriptions = []

    async def _published():
        if not subscriptions:
            subscriptions.append(await make_subscription(tenant_id))
        async with tenant_session(tenant_id, session_factory) as session:
            entries = await publish_event(
                session, tenant_id, "asset.created", {"n": 1}, settings=test_settings
            )
        return entries[0]

    return _published


@pytest.fixture
def claim(session_factory, tenant_id):
    async def _claim(worker_id="worker-1"):
        async with tenant_session(tenant_id, session_factory) as session:
            return await claim_next_entry(session, tenant_id, worker_id)

    return _claim


@pytest.fixture
def get_entry(session_factory, tenant_id):
    async def _get(outbox_id):
        async with tenant_session(tenant_id, session_factory) as session:
            return await get_outbox_entry(session, tenant_id, outbox_id)

    return _get


async def set_status(session_factory, tenant_id, outbox_id, status, **values):
    async with tenant_session(tenant_id, session_factory) as session:
        entry = await get_outbox_entry(session, tenant_id, outbox_id)
        entry.status = status.value
        for key, value in values.items():
            setattr(entry, key, value)


class TestClaim:
    @pytest.mark.asyncio
    async def test_claim_joins_subscription(self, published, claim, get_entry):
        entry = await published()
        claimed = await claim()

        assert claimed.outbox_id == entry.id
        assert claimed.event_id == entry.event_id
        assert claimed.url == "https://hooks.example.com/receive"
        assert claimed.encrypted_secret
        assert claimed.attempts == 0
        assert claimed.attempt_number == 1

        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.PROCESSING.value
        assert stored.locked_by == "worker-1"

    @pytest.mark.asyncio
    async def test_nothing_due(self, published, claim, session_factory, tenant_id):
        entry = await published()
        await set_status(
            session_factory, tenant_id, entry.id, OutboxStatus.PENDING,
            next_retry_at=utcnow() + timedelta(minutes=1),
        )
        assert await claim() is None

    @pytest.mark.asyncio
    async def test_claimed_once(self, published, claim):
        await published()
        assert await claim("worker-1") is not None
        assert await claim("worker-2") is None

    @pytest.mark.asyncio
    async def test_concurrent_claim_has_single_winner(self, published, claim, get_entry):
        entry = await published()

        results = await asyncio.gather(*(claim(f"worker-{i}") for i in range(5)))
        winners = [r for r in results if r is not None]

        assert len(winners) == 1
        assert winners[0].outbox_id == entry.id
        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.PROCESSING.value
        assert stored.locked_by == winners[0].worker_id


class TestTransitions:
    @pytest.mark.asyncio
    async def test_delivered(self, published, claim, get_entry, session_factory, tenant_id):
        entry = await published()
        claimed = await claim()

        async with tenant_session(tenant_id, session_factory) as session:
            assert await mark_delivered(session, claimed)

        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.DELIVERED.value
        assert stored.attempts == 1
        assert stored.delivered_at is not None
        assert stored.next_retry_at is None
        assert stored.locked_by is None

    @pytest.mark.asyncio
    async def test_failure_schedules_retry(
        self, published, claim, get_entry, session_factory, tenant_id
    ):
        entry = await published()
        claimed = await claim()
        before = utcnow()

        async with tenant_session(tenant_id, session_factory) as session:
            status = await mark_failed(
                session, claimed, "HTTP 500", max_attempts=5, backoff=BACKOFF
            )

        assert status == OutboxStatus.PENDING
        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.PENDING.value
        assert stored.attempts == 1
        assert stored.last_error == "HTTP 500"
        assert stored.next_retry_at >= before + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_last_failure_dead_letters(
        self, published, claim, get_entry, session_factory, tenant_id
    ):
        entry = await published()
        await set_status(session_factory, tenant_id, entry.id, OutboxStatus.PENDING, attempts=4)
        claimed = await claim()
        assert claimed.attempt_number == 5

        async with tenant_session(tenant_id, session_factory) as session:
            status = await mark_failed(
                session, claimed, "HTTP 500", max_attempts=5, backoff=BACKOFF
            )

        assert status == OutboxStatus.DEAD_LETTER
        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.DEAD_LETTER.value
        assert stored.attempts == 5
        assert stored.next_retry_at is None

    @pytest.mark.asyncio
    async def test_permanent_failure_spends_budget(
        self, published, claim, get_entry, session_factory, tenant_id
    ):
        entry = await published()
        claimed = await claim()

        async with tenant_session(tenant_id, session_factory) as session:
            status = await mark_failed(
                session, claimed, "URL blocked", max_attempts=5, backoff=BACKOFF, permanent=True
            )

        assert status == OutboxStatus.DEAD_LETTER
        assert (await get_entry(entry.id)).attempts == 5

    @pytest.mark.asyncio
    async def test_lost_lease(self, published, claim, get_entry, session_factory, tenant_id):
        entry = await published()
        claimed = await claim()

        async with session_factory() as session, session.begin():
            assert await reap_stuck_outbox_entries(
                session, threshold_seconds=0, max_attempts=5
            ) == 1

        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.PENDING.value
        assert stored.attempts == 1
        assert stored.locked_by is None

        async with tenant_session(tenant_id, session_factory) as session:
            assert not await mark_delivered(session, claimed)
            assert await mark_failed(
                session, claimed, "late", max_attempts=5, backoff=BACKOFF
            ) is None
        assert (await get_entry(entry.id)).status == OutboxStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_reaper_leaves_fresh_claims(self, published, claim, session_factory):
        await published()
        await claim()
        async with session_factory() as session, session.begin():
            assert await reap_stuck_outbox_entries(
                session, threshold_seconds=300, max_attempts=5
            ) == 0

    @pytest.mark.asyncio
    async def test_reaper_dead_letters_last_attempt(
        self, published, claim, get_entry, session_factory, tenant_id
    ):
        """A row whose delivery keeps killing the worker still runs out of attempts."""
        entry = await published()
        await set_status(session_factory, tenant_id, entry.id, OutboxStatus.PENDING, attempts=4)
        await claim()

        async with session_factory() as session, session.begin():
            assert await reap_stuck_outbox_entries(
                session, threshold_seconds=0, max_attempts=5
            ) == 1
        async with session_factory() as session, session.begin():
            assert await reap_stuck_outbox_entries(
                session, threshold_seconds=0, max_attempts=5
            ) == 0

        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.DEAD_LETTER.value
        assert stored.attempts == 5
        assert stored.next_retry_at is None
        assert stored.locked_by is None

        async with tenant_session(tenant_id, session_factory) as session:
            audit = (
                await session.execute(
                    select(AuditLog).where(AuditLog.action == AuditAction.WEBHOOK_FAILED.value)
                )
            ).scalar_one()
        assert audit.resource_id == entry.id
        assert audit.details["attempts"] == 5


class TestQueries:
    @pytest.mark.asyncio
    async def test_stats_and_listing(self, published, session_factory, tenant_id):
        entry = await published()
        await published()
        await set_status(session_factory, tenant_id, entry.id, OutboxStatus.DEAD_LETTER)

        async with tenant_session(tenant_id, session_factory) as session:
            stats = await get_outbox_stats(session, tenant_id)
            dead, dead_total = await list_outbox_entries(
                session, tenant_id, status=OutboxStatus.DEAD_LETTER
            )
            _, all_total = await list_outbox_entries(session, tenant_id, event_type="asset.created")

        assert stats == {"pending": 1, "processing": 0, "delivered": 0, "dead_letter": 1}
        assert dead_total == 1
        assert dead[0].id == entry.id
        assert all_total == 2

    @pytest.mark.asyncio
    async def test_next_pending_retry_at(self, published, session_factory, tenant_id):
        async with tenant_session(tenant_id, session_factory) as session:
            assert await next_pending_retry_at(session, tenant_id) is None
        entry = await published()
        async with tenant_session(tenant_id, session_factory) as session:
            assert await next_pending_retry_at(session, tenant_id) == entry.next_retry_at


class TestManualRetry:
    @pytest.mark.asyncio
    async def test_retry_dead_letter(
        self, published, get_entry, session_factory, test_settings, tenant_id
    ):
        entry = await published()
        await set_status(
            session_factory, tenant_id, entry.id, OutboxStatus.DEAD_LETTER,
            attempts=5, next_retry_at=None,
        )

        async with tenant_session(tenant_id, session_factory) as session:
            assert await retry_outbox_entry(session, tenant_id, entry.id, settings=test_settings)

        stored = await get_entry(entry.id)
        assert stored.status == OutboxStatus.PENDING.value
        assert stored.attempts == 0
        assert stored.next_retry_at is not None

        async with tenant_session(tenant_id, session_factory) as session:
            jobs, _ = await list_jobs(session, tenant_id, job_type=JobType.WEBHOOK_DELIVER)
            audit = (
                await session.execute(
                    select(AuditLog).where(
                        AuditLog.action == AuditAction.WEBHOOK_RETRY_REQUESTED.value
                    )
                )
            ).scalar_one()
        assert any(job.payload.get("outbox_id") == str(entry.id) for job in jobs)
        assert audit.resource_id == entry.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [OutboxStatus.PENDING, OutboxStatus.PROCESSING, OutboxStatus.DELIVERED]
    )
    async def test_retry_only_from_dead_letter(
        self, status, published, get_entry, session_factory, test_settings, tenant_id
    ):
        entry = await published()
        await set_status(session_factory, tenant_id, entry.id, status)

        async with tenant_session(tenant_id, session_factory) as session:
            assert not await retry_outbox_entry(
                session, tenant_id, entry.id, settings=test_settings
            )
        assert (await get_entry(entry.id)).status == status.value

    @pytest.mark.asyncio
    async def test_retry_missing_entry(self, session_factory, test_settings, tenant_id):
        async with tenant_session(tenant_id, session_factory) as session:
            assert not await retry_outbox_entry(
                session, tenant_id, uuid.uuid4(), settings=test_settings
            )

    @pytest.mark.asyncio
    async def test_retry_rate_limited(self, session_factory, test_settings, tenant_id):
        for _ in range(test_settings.retry_rate_limit_requests):
            async with tenant_session(tenant_id, session_factory) as session:
                await retry_outbox_entry(session, tenant_id, uuid.uuid4(), settings=test_settings)

        with pytest.raises(RateLimitExceeded) as exc_info:
            async with tenant_session(tenant_id, session_factory) as session:
                await retry_outbox_entry(session, tenant_id, uuid.uuid4(), settings=test_settings)
        assert exc_info.value.key == retry_rate_limit_key(tenant_id)

        # Budgets are per tenant
        other_tenant = uuid.uuid4()
        async with tenant_session(other_tenant, session_factory) as session:
            await retry_outbox_entry(session, other_tenant, uuid.uuid4(), settings=test_settings)


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_fixed_window(self, session_factory):
        now = 1_700_000_000.0
        results = []
        for _ in range(3):
            async with session_factory() as session, session.begin():
                results.append(await check_rate_limit(session, "k", 2, 60, now=now))

        assert [r.allowed for r in results] == [True, True, False]
        assert [r.count for r in results] == [1, 2, 3]
        assert results[0].remaining == 1
        assert results[2].remaining == 0
        assert 1 <= results[2].retry_after <= 60

        async with session_factory() as session, session.begin():
            next_window = await check_rate_limit(session, "k", 2, 60, now=now + 60)
        assert next_window.allowed
        assert next_window.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, session_factory):
        now = 1_700_000_000.0
        async with session_factory() as session, session.begin():
            await check_rate_limit(session, "a", 1, 60, now=now)
            result = await check_rate_limit(session, "b", 1, 60, now=now)
        assert result.allowed
