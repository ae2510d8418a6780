"""Background job runner and reaper."""

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.backoff import BackoffPolicy
from eventrelay.config import Settings, get_settings
from eventrelay.db.enums import JobType
from eventrelay.db.models import BackgroundJob
from eventrelay.db.session import get_async_session_factory, tenant_session
from eventrelay.jobs.queue import (
    acquire_job,
    complete_job,
    fail_job,
    get_tenants_with_due_jobs,
    reap_stuck_jobs,
)
from eventrelay.metrics.definitions import JOBS_FINISHED_TOTAL, REAPED_TOTAL
from eventrelay.webhook.dispatcher import DeliveryWorker
from eventrelay.webhook.outbox import reap_stuck_outbox_entries

logger = logging.getLogger(__name__)

JobHandler = Callable[[BackgroundJob], Awaitable[dict[str, Any] | None]]


class JobWorker:
    """Background worker that runs queued jobs for every tenant.

    Each poll picks up to ``worker_batch_size`` tenants with due work and
    runs one job per tenant concurrently. Only job types with a registered
    handler are claimed; ``webhook_deliver`` is handled by a DeliveryWorker.
    The reaper runs every ``reaper_interval_seconds``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        delivery_worker: DeliveryWorker | None = None,
        handlers: dict[JobType | str, JobHandler] | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.backoff = BackoffPolicy.from_settings(self.settings)
        self.worker_id = f"{self.settings.instance_id}:jobs:{uuid.uuid4().hex[:8]}"
        self.delivery_worker = delivery_worker or DeliveryWorker(
            self.settings, session_factory=session_factory
        )
        self.handlers: dict[str, JobHandler] = {
            JobType.WEBHOOK_DELIVER.value: self.delivery_worker.handle_job,
        }
        for job_type, handler in (handlers or {}).items():
            self.register_handler(job_type, handler)

        self._running = False
        self._task: asyncio.Task | None = None
        self._last_reap = 0.0

    def register_handler(self, job_type: JobType | str, handler: JobHandler) -> None:
        """Register the coroutine that runs jobs of ``job_type``."""
        self.handlers[JobType(job_type).value] = handler

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_async_session_factory()

    async def run_next(self, tenant_id: uuid.UUID) -> BackgroundJob | None:
        """Claim and run one due job of a tenant.

        A handler exception fails the attempt (with backoff while attempts
        remain). Losing the lease while the handler ran is logged and the
        outcome discarded.

        Returns:
            The job that was run, or None if nothing was claimable.
        """
        async with tenant_session(tenant_id, self.session_factory) as session:
            job = await acquire_job(session, tenant_id, self.worker_id, types=list(self.handlers))
        if job is None:
            return None

        handler = self.handlers[job.type]
        logger.debug(f"Running {job.type} job {job.id} (attempt {job.attempts}/{job.max_attempts})")

        try:
            result = await handler(job)
        except Exception as e:
            logger.exception(f"Job {job.id} ({job.type}) raised")
            error = str(e) or type(e).__name__
            async with tenant_session(tenant_id, self.session_factory) as session:
                failed = await fail_job(
                    session, tenant_id, job.id, self.worker_id, error, backoff=self.backoff
                )
            if not failed:
                outcome = "lease_lost"
            elif job.attempts < job.max_attempts:
                outcome = "retry"
            else:
                outcome = "failed"
        else:
            async with tenant_session(tenant_id, self.session_factory) as session:
                completed = await complete_job(session, tenant_id, job.id, self.worker_id, result)
            outcome = "succeeded" if completed else "lease_lost"

        JOBS_FINISHED_TOTAL.labels(type=job.type, outcome=outcome).inc()
        return job

    async def process_batch(self) -> int:
        """Run one job for each tenant that has due work.

        Returns:
            Number of jobs run
        """
        async with self._factory()() as session:
            tenant_ids = await get_tenants_with_due_jobs(
                session,
                types=list(self.handlers),
                limit=self.settings.worker_batch_size,
            )

        if not tenant_ids:
            return 0

        results = await asyncio.gather(
            *(self.run_next(tenant_id) for tenant_id in tenant_ids),
            return_exceptions=True,
        )

        processed = 0
        for tenant_id, result in zip(tenant_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    f"Job processing for tenant {tenant_id} failed: {result}",
                    exc_info=result,
                )
            elif result is not None:
                processed += 1
        return processed

    async def reap(self) -> tuple[int, int]:
        """Reclaim stuck jobs and stuck outbox rows across all tenants.

        Returns:
            Tuple of (jobs reclaimed, outbox entries reclaimed)
        """
        async with self._factory()() as session, session.begin():
            jobs = await reap_stuck_jobs(session, self.settings.job_stuck_threshold_seconds)
            entries = await reap_stuck_outbox_entries(
                session,
                self.settings.outbox_stuck_threshold_seconds,
                max_attempts=self.settings.webhook_max_attempts,
            )

        if jobs:
            REAPED_TOTAL.labels(kind="job").inc(jobs)
        if entries:
            REAPED_TOTAL.labels(kind="outbox").inc(entries)
        return jobs, entries

    async def _maybe_reap(self) -> None:
        now = time.monotonic()
        if now - self._last_reap < self.settings.reaper_interval_seconds:
            return
        self._last_reap = now
        try:
            await self.reap()
        except Exception:
            logger.exception("Reaper run failed")

    async def run(self) -> None:
        """Run the worker loop."""
        self._running = True
        logger.info(
            f"Job worker started (instance: {self.settings.instance_id}, "
            f"types: {sorted(self.handlers)})"
        )

        while self._running:
            try:
                await self._maybe_reap()
                processed = await self.process_batch()
                if processed == 0:
                    # No work available, wait before checking again
                    await asyncio.sleep(self.settings.worker_poll_interval)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in job worker loop")
                await asyncio.sleep(self.settings.worker_poll_interval)

        logger.info("Job worker stopped")

    def start(self) -> None:
        """Start the worker in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the worker and clean up resources."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self.delivery_worker.close()

    async def wait(self) -> None:
        """Wait for the worker to finish."""
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
