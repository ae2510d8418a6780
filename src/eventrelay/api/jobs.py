"""Background job inspection endpoints."""

import uuid

from fastapi import APIRouter, HTTPException, Query, status

from eventrelay.api.dependencies import TenantSession
from eventrelay.db.enums import JobStatus, JobType
from eventrelay.jobs.queue import cancel_job, get_job, list_jobs
from eventrelay.schemas import JobListResponse, JobResponse, MessageResponse

router = APIRouter(prefix="/tenants/{tenant_id}/jobs", tags=["jobs"])


@router.get("", response_model=JobListResponse)
async def list_jobs_endpoint(
    tenant_id: uuid.UUID,
    session: TenantSession,
    job_type: JobType | None = Query(None, alias="type"),
    status_filter: JobStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> JobListResponse:
    """List the tenant's background jobs, newest first."""
    jobs, total = await list_jobs(session, tenant_id, job_type, status_filter, limit, offset)
    return JobListResponse(
        items=[JobResponse.model_validate(j) for j in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{job_id}", response_model=JobResponse)
async def get_job_endpoint(
    tenant_id: uuid.UUID,
    job_id: uuid.UUID,
    session: TenantSession,
) -> JobResponse:
    """Get a background job."""
    job = await get_job(session, tenant_id, job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=MessageResponse)
async def cancel_job_endpoint(
    tenant_id: uuid.UUID,
    job_id: uuid.UUID,
    session: TenantSession,
) -> MessageResponse:
    """Cancel a queued or processing job."""
    if not await cancel_job(session, tenant_id, job_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job not found or already finished",
        )
    return MessageResponse(message=f"Job {job_id} cancelled")
