"""Database-backed, tenant-scoped background job queue.

Every function runs inside the caller's transaction (usually opened with
``tenant_session``) and only flushes. Claiming uses
``SELECT ... FOR UPDATE SKIP LOCKED`` to pick a candidate without waiting on
rows other workers hold, then a compare-and-swap ``UPDATE`` guarded by the
row's status, so exactly one caller wins a given job.

Lease loss is an expected race, not an error: ``complete_job``, ``fail_job``
and ``cancel_job`` return False and ``acquire_job`` returns None when they
had no effect.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.backoff import BackoffPolicy
from eventrelay.config import Settings, get_settings
from eventrelay.db.enums import JobStatus, JobType
from eventrelay.db.models import BackgroundJob, utcnow

logger = logging.getLogger(__name__)

REAPED_ERROR_MESSAGE = "Job timed out and was reclaimed by reaper"
REAPED_EXHAUSTED_MESSAGE = "Job timed out and was reclaimed by reaper after its final attempt"


def _type_values(types: Iterable[JobType | str] | None) -> list[str]:
    return [JobType(t).value for t in types or ()]


async def enqueue_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_type: JobType | str,
    payload: dict[str, Any] | None = None,
    *,
    priority: int = 0,
    run_after: datetime | None = None,
    max_attempts: int | None = None,
    created_by: uuid.UUID | None = None,
    settings: Settings | None = None,
) -> BackgroundJob:
    """Insert a queued job.

    Args:
        session: Database session
        tenant_id: Owning tenant
        job_type: Kind of work
        payload: Handler input
        priority: Higher runs first
        run_after: Earliest start time (defaults to now)
        max_attempts: Attempt budget (defaults to job_default_max_attempts)
        created_by: User that requested the work
        settings: Application settings

    Returns:
        The new BackgroundJob
    """
    settings = settings or get_settings()

    job = BackgroundJob(
        tenant_id=tenant_id,
        type=JobType(job_type).value,
        status=JobStatus.QUEUED.value,
        priority=priority,
        run_after=run_after or utcnow(),
        attempts=0,
        max_attempts=max_attempts or settings.job_default_max_attempts,
        payload=payload or {},
        created_by=created_by,
    )
    session.add(job)
    await session.flush()

    logger.debug(f"Enqueued {job.type} job {job.id} for tenant {tenant_id}")
    return job


async def acquire_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    worker_id: str,
    types: Iterable[JobType | str] | None = None,
) -> BackgroundJob | None:
    """Claim the next due job for a tenant.

    Picks the highest priority queued job whose ``run_after`` has passed and
    whose attempt budget is not spent, marks it processing under
    ``worker_id`` and counts the attempt.

    Returns:
        The claimed job, or None if nothing is eligible or another worker
        won the row.
    """
    now = utcnow()
    candidate = (
        select(BackgroundJob.id)
        .where(
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.status == JobStatus.QUEUED.value,
            BackgroundJob.run_after <= now,
            BackgroundJob.attempts < BackgroundJob.max_attempts,
        )
        .order_by(
            BackgroundJob.priority.desc(),
            BackgroundJob.run_after.asc(),
            BackgroundJob.created_at.asc(),
        )
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    type_values = _type_values(types)
    if type_values:
        candidate = candidate.where(BackgroundJob.type.in_(type_values))

    job_id = (await session.execute(candidate)).scalar_one_or_none()
    if job_id is None:
        return None

    claim = (
        update(BackgroundJob)
        .where(
            BackgroundJob.id == job_id,
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.status == JobStatus.QUEUED.value,
        )
        .values(
            status=JobStatus.PROCESSING.value,
            locked_at=now,
            locked_by=worker_id,
            attempts=BackgroundJob.attempts + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(claim)
    if result.rowcount != 1:
        logger.debug(f"Job {job_id} was claimed by another worker")
        return None

    job = await session.get(BackgroundJob, job_id, populate_existing=True)
    logger.debug(f"Worker {worker_id} acquired job {job_id} (attempt {job.attempts})")
    return job


async def complete_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_id: uuid.UUID,
    worker_id: str,
    result: dict[str, Any] | None = None,
) -> bool:
    """Mark a job succeeded if ``worker_id`` still holds its lease."""
    stmt = (
        update(BackgroundJob)
        .where(
            BackgroundJob.id == job_id,
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.locked_by == worker_id,
            BackgroundJob.status == JobStatus.PROCESSING.value,
        )
        .values(
            status=JobStatus.SUCCEEDED.value,
            result=result,
            locked_at=None,
            locked_by=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    completed = (await session.execute(stmt)).rowcount == 1
    await session.flush()

    if completed:
        logger.info(f"Job {job_id} succeeded")
    else:
        logger.warning(f"Job {job_id} not completed: lease no longer held by {worker_id}")
    return completed


async def fail_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_id: uuid.UUID,
    worker_id: str,
    error: str,
    retry: bool = True,
    backoff: BackoffPolicy | None = None,
) -> bool:
    """Record a failed attempt if ``worker_id`` still holds the lease.

    The job is requeued with backoff while it has attempts left and ``retry``
    is set, otherwise it is marked failed for good.
    """
    stmt = select(BackgroundJob.attempts, BackgroundJob.max_attempts).where(
        BackgroundJob.id == job_id,
        BackgroundJob.tenant_id == tenant_id,
        BackgroundJob.locked_by == worker_id,
        BackgroundJob.status == JobStatus.PROCESSING.value,
    )
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        logger.warning(f"Job {job_id} not failed: lease no longer held by {worker_id}")
        return False

    attempts, max_attempts = row
    now = utcnow()
    should_retry = retry and attempts < max_attempts

    values: dict[str, Any] = {
        "status": (JobStatus.QUEUED if should_retry else JobStatus.FAILED).value,
        "error_message": error,
        "locked_at": None,
        "locked_by": None,
        "updated_at": now,
    }
    if should_retry:
        backoff = backoff or BackoffPolicy.from_settings(get_settings())
        values["run_after"] = backoff.next_run_at(attempts, now)

    stmt = (
        update(BackgroundJob)
        .where(
            BackgroundJob.id == job_id,
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.locked_by == worker_id,
            BackgroundJob.status == JobStatus.PROCESSING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    failed = (await session.execute(stmt)).rowcount == 1
    await session.flush()

    if not failed:
        return False
    if should_retry:
        logger.info(
            f"Job {job_id} failed (attempt {attempts}/{max_attempts}), "
            f"retry at {values['run_after']}: {error}"
        )
    else:
        logger.warning(f"Job {job_id} failed permanently after {attempts} attempts: {error}")
    return True


async def cancel_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_id: uuid.UUID,
) -> bool:
    """Cancel a queued or processing job.

    Cancelling only flips the status and drops the lease; work already in
    flight runs to completion, and its later complete/fail is a no-op.
    """
    stmt = (
        update(BackgroundJob)
        .where(
            BackgroundJob.id == job_id,
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]),
        )
        .values(
            status=JobStatus.CANCELLED.value,
            locked_at=None,
            locked_by=None,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    cancelled = (await session.execute(stmt)).rowcount == 1
    await session.flush()

    if cancelled:
        logger.info(f"Job {job_id} cancelled")
    return cancelled


async def get_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_id: uuid.UUID,
) -> BackgroundJob | None:
    """Fetch one job of a tenant."""
    stmt = select(BackgroundJob).where(
        BackgroundJob.id == job_id,
        BackgroundJob.tenant_id == tenant_id,
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_jobs(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_type: JobType | str | None = None,
    status: JobStatus | str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[BackgroundJob], int]:
    """List a tenant's jobs, newest first.

    Returns:
        Tuple of (jobs, total matching count)
    """
    conditions = [BackgroundJob.tenant_id == tenant_id]
    if job_type is not None:
        conditions.append(BackgroundJob.type == JobType(job_type).value)
    if status is not None:
        conditions.append(BackgroundJob.status == JobStatus(status).value)

    count_stmt = select(func.count()).select_from(BackgroundJob).where(*conditions)
    total = (await session.execute(count_stmt)).scalar() or 0

    stmt = (
        select(BackgroundJob)
        .where(*conditions)
        .order_by(BackgroundJob.created_at.desc(), BackgroundJob.id)
        .limit(limit)
        .offset(offset)
    )
    jobs = list((await session.execute(stmt)).scalars().all())
    return jobs, total


async def reap_stuck_jobs(
    session: AsyncSession,
    threshold_seconds: int,
    tenant_id: uuid.UUID | None = None,
) -> int:
    """Reclaim jobs whose worker is presumed dead.

    Processing jobs locked longer than ``threshold_seconds`` go back to the
    queue with their lease cleared. A job that already used its last attempt
    is marked failed instead, since it could never be claimed again. Rows
    leave ``processing`` either way, so a second run reclaims nothing.

    Args:
        session: Database session
        threshold_seconds: Lease age after which a job counts as stuck
        tenant_id: Restrict to one tenant (all tenants if None)

    Returns:
        Number of jobs reclaimed
    """
    now = utcnow()
    cutoff = now - timedelta(seconds=threshold_seconds)

    conditions = [
        BackgroundJob.status == JobStatus.PROCESSING.value,
        BackgroundJob.locked_at <= cutoff,
    ]
    if tenant_id is not None:
        conditions.append(BackgroundJob.tenant_id == tenant_id)

    requeue = (
        update(BackgroundJob)
        .where(*conditions, BackgroundJob.attempts < BackgroundJob.max_attempts)
        .values(
            status=JobStatus.QUEUED.value,
            locked_at=None,
            locked_by=None,
            error_message=REAPED_ERROR_MESSAGE,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    exhausted = (
        update(BackgroundJob)
        .where(*conditions, BackgroundJob.attempts >= BackgroundJob.max_attempts)
        .values(
            status=JobStatus.FAILED.value,
            locked_at=None,
            locked_by=None,
            error_message=REAPED_EXHAUSTED_MESSAGE,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    requeued = (await session.execute(requeue)).rowcount
    failed = (await session.execute(exhausted)).rowcount
    await session.flush()

    reaped = requeued + failed
    if reaped:
        logger.info(f"Reaper reclaimed {reaped} stuck jobs ({requeued} requeued, {failed} failed)")
    return reaped


async def get_tenants_with_due_jobs(
    session: AsyncSession,
    types: Iterable[JobType | str] | None = None,
    limit: int = 10,
) -> list[uuid.UUID]:
    """Tenants that have at least one claimable job, oldest work first."""
    now = utcnow()
    oldest = func.min(BackgroundJob.run_after)
    stmt = (
        select(BackgroundJob.tenant_id)
        .where(
            BackgroundJob.status == JobStatus.QUEUED.value,
            BackgroundJob.run_after <= now,
            BackgroundJob.attempts < BackgroundJob.max_attempts,
        )
        .group_by(BackgroundJob.tenant_id)
        .order_by(oldest)
        .limit(limit)
    )
    type_values = _type_values(types)
    if type_values:
        stmt = stmt.where(BackgroundJob.type.in_(type_values))
    return list((await session.execute(stmt)).scalars().all())


async def find_queued_job(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    job_type: JobType | str,
    not_after: datetime | None = None,
) -> BackgroundJob | None:
    """Earliest queued job of a type, optionally due no later than ``not_after``."""
    stmt = (
        select(BackgroundJob)
        .where(
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.type == JobType(job_type).value,
            BackgroundJob.status == JobStatus.QUEUED.value,
            BackgroundJob.attempts < BackgroundJob.max_attempts,
        )
        .order_by(BackgroundJob.run_after.asc())
        .limit(1)
    )
    if not_after is not None:
        stmt = stmt.where(BackgroundJob.run_after <= not_after)
    return (await session.execute(stmt)).scalar_one_or_none()
