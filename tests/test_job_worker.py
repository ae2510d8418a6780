"""Tests for the background job worker."""

import asyncio
import uuid
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select, update

from eventrelay.db.enums import JobStatus, JobType, OutboxStatus
from eventrelay.db.models import BackgroundJob, WebhookOutboxEntry, utcnow
from eventrelay.db.session import tenant_session
from eventrelay.jobs.queue import acquire_job, enqueue_job, get_job
from eventrelay.jobs.worker import JobWorker
from eventrelay.webhook.dispatcher import DeliveryWorker
from eventrelay.webhook.outbox import claim_next_entry, get_outbox_entry
from eventrelay.webhook.publisher import publish_event


@pytest_asyncio.fixture
async def delivery_worker(test_settings, vault, session_factory, fake_dns):
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    worker = DeliveryWorker(
        test_settings, vault=vault, session_factory=session_factory, http_client=client
    )
    yield worker
    await client.aclose()


@pytest_asyncio.fixture
async def job_worker(test_settings, session_factory, delivery_worker):
    worker = JobWorker(test_settings, session_factory, delivery_worker)
    yield worker
    await worker.stop()


@pytest.fixture
def enqueue(session_factory, test_settings):
    async def _enqueue(tenant_id, job_type=JobType.IMPORT_ASSETS, payload=None, **kwargs):
        async with tenant_session(tenant_id, session_factory) as session:
            return await enqueue_job(
                session, tenant_id, job_type, payload or {}, settings=test_settings, **kwargs
            )

    return _enqueue


@pytest.fixture
def load_job(session_factory):
    async def _load(job):
        async with tenant_session(job.tenant_id, session_factory) as session:
            return await get_job(session, job.tenant_id, job.id)

    return _load


class TestRunNext:
    @pytest.mark.asyncio
    async def test_handler_result_is_stored(self, job_worker, enqueue, load_job, tenant_id):
        seen = []

        async def handler(job):
            seen.append(job.payload)
            return {"imported": 3}

        job_worker.register_handler(JobType.IMPORT_ASSETS, handler)
        job = await enqueue(tenant_id, payload={"file": "assets.csv"})

        ran = await job_worker.run_next(tenant_id)

        assert ran.id == job.id
        assert seen == [{"file": "assets.csv"}]
        stored = await load_job(job)
        assert stored.status == JobStatus.SUCCEEDED.value
        assert stored.result == {"imported": 3}
        assert stored.locked_by is None

    @pytest.mark.asyncio
    async def test_raising_handler_requeues_with_backoff(
        self, job_worker, enqueue, load_job, tenant_id
    ):
        async def handler(job):
            raise RuntimeError("source file missing")

        job_worker.register_handler(JobType.IMPORT_ASSETS, handler)
        job = await enqueue(tenant_id)

        await job_worker.run_next(tenant_id)

        stored = await load_job(job)
        assert stored.status == JobStatus.QUEUED.value
        assert stored.error_message == "source file missing"
        assert stored.attempts == 1
        assert stored.run_after > utcnow()
        assert stored.locked_by is None

    @pytest.mark.asyncio
    async def test_last_attempt_fails_job(self, job_worker, enqueue, load_job, tenant_id):
        async def handler(job):
            raise RuntimeError("still broken")

        job_worker.register_handler(JobType.IMPORT_ASSETS, handler)
        job = await enqueue(tenant_id, max_attempts=1)

        await job_worker.run_next(tenant_id)

        stored = await load_job(job)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_message == "still broken"

    @pytest.mark.asyncio
    async def test_unhandled_types_are_not_claimed(self, job_worker, enqueue, load_job, tenant_id):
        job = await enqueue(tenant_id, job_type=JobType.EXPORT_ASSETS)

        assert await job_worker.run_next(tenant_id) is None

        stored = await load_job(job)
        assert stored.status == JobStatus.QUEUED.value
        assert stored.attempts == 0

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, job_worker, tenant_id):
        assert await job_worker.run_next(tenant_id) is None

    @pytest.mark.asyncio
    async def test_cancelled_while_running_keeps_cancelled(
        self, job_worker, enqueue, load_job, session_factory, tenant_id
    ):
        async def handler(job):
            async with tenant_session(job.tenant_id, session_factory) as session:
                await session.execute(
                    update(BackgroundJob)
                    .where(BackgroundJob.id == job.id)
                    .values(status=JobStatus.CANCELLED.value, locked_by=None, locked_at=None)
                )
            return {"done": True}

        job_worker.register_handler(JobType.IMPORT_ASSETS, handler)
        job = await enqueue(tenant_id)

        await job_worker.run_next(tenant_id)

        stored = await load_job(job)
        assert stored.status == JobStatus.CANCELLED.value
        assert stored.result is None


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_one_job_per_tenant(self, job_worker, enqueue):
        async def handler(job):
            await asyncio.sleep(0)
            return None

        job_worker.register_handler(JobType.IMPORT_ASSETS, handler)
        tenant_a, tenant_b = uuid.uuid4(), uuid.uuid4()
        await enqueue(tenant_a)
        await enqueue(tenant_a)
        await enqueue(tenant_b)

        assert await job_worker.process_batch() == 2
        assert await job_worker.process_batch() == 1
        assert await job_worker.process_batch() == 0

    @pytest.mark.asyncio
    async def test_future_jobs_wait(self, job_worker, enqueue):
        job_worker.register_handler(JobType.IMPORT_ASSETS, lambda job: asyncio.sleep(0))
        await enqueue(uuid.uuid4(), run_after=utcnow() + timedelta(minutes=5))

        assert await job_worker.process_batch() == 0

    @pytest.mark.asyncio
    async def test_publish_to_delivery(
        self, job_worker, make_subscription, session_factory, test_settings, tenant_id
    ):
        await make_subscription(tenant_id)
        async with tenant_session(tenant_id, session_factory) as session:
            entries = await publish_event(
                session, tenant_id, "asset.created", {"id": 7}, settings=test_settings
            )

        assert await job_worker.process_batch() == 1

        async with tenant_session(tenant_id, session_factory) as session:
            entry = await get_outbox_entry(session, tenant_id, entries[0].id)
            job = (
                await session.execute(
                    select(BackgroundJob).where(BackgroundJob.tenant_id == tenant_id)
                )
            ).scalar_one()
        assert entry.status == OutboxStatus.DELIVERED.value
        assert job.status == JobStatus.SUCCEEDED.value
        assert job.result == {"processed": 1, "next_run_at": None}


class TestReap:
    @pytest.mark.asyncio
    async def test_reclaims_stuck_jobs_and_entries(
        self,
        job_worker,
        enqueue,
        load_job,
        make_subscription,
        session_factory,
        test_settings,
        tenant_id,
    ):
        await make_subscription(tenant_id)
        job = await enqueue(tenant_id)
        async with tenant_session(tenant_id, session_factory) as session:
            entries = await publish_event(session, tenant_id, "asset.created", {},
                                          settings=test_settings)
        async with tenant_session(tenant_id, session_factory) as session:
            await acquire_job(session, tenant_id, "dead-worker", types=[JobType.IMPORT_ASSETS])
            await claim_next_entry(session, tenant_id, "dead-worker")

        long_ago = utcnow() - timedelta(hours=1)
        async with tenant_session(tenant_id, session_factory) as session:
            await session.execute(
                update(BackgroundJob).where(BackgroundJob.id == job.id).values(locked_at=long_ago)
            )
            await session.execute(
                update(WebhookOutboxEntry)
                .where(WebhookOutboxEntry.id == entries[0].id)
                .values(locked_at=long_ago)
            )

        assert await job_worker.reap() == (1, 1)
        assert await job_worker.reap() == (0, 0)

        stored = await load_job(job)
        assert stored.status == JobStatus.QUEUED.value
        assert stored.locked_by is None
        async with tenant_session(tenant_id, session_factory) as session:
            entry = await get_outbox_entry(session, tenant_id, entries[0].id)
        assert entry.status == OutboxStatus.PENDING.value
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_fresh_leases_are_kept(self, job_worker, enqueue, session_factory, tenant_id):
        await enqueue(tenant_id)
        async with tenant_session(tenant_id, session_factory) as session:
            await acquire_job(session, tenant_id, "busy-worker")

        assert await job_worker.reap() == (0, 0)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_jobs_until_stopped(self, job_worker, enqueue, load_job, tenant_id):
        done = asyncio.Event()

        async def handler(job):
            done.set()
            return {"ok": True}

        job_worker.register_handler(JobType.IMPORT_ASSETS, handler)
        job = await enqueue(tenant_id)

        job_worker.start()
        await asyncio.wait_for(done.wait(), timeout=5)
        # Give the worker a moment to record the outcome
        for _ in range(50):
            if (await load_job(job)).status == JobStatus.SUCCEEDED.value:
                break
            await asyncio.sleep(0.05)
        await job_worker.stop()

        assert (await load_job(job)).status == JobStatus.SUCCEEDED.value
