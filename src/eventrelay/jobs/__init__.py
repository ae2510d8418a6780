"""Tenant-scoped background job queue."""

from eventrelay.jobs.queue import (
    acquire_job,
    cancel_job,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    list_jobs,
    reap_stuck_jobs,
)

__all__ = [
    "acquire_job",
    "cancel_job",
    "complete_job",
    "enqueue_job",
    "fail_job",
    "get_job",
    "list_jobs",
    "reap_stuck_jobs",
]
