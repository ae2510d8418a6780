"""Background job Pydantic schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class JobResponse(BaseModel):
    """Schema for background job response."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tenant_id: uuid.UUID
    type: str
    status: str
    priority: int
    run_after: datetime
    attempts: int
    max_attempts: int
    locked_at: datetime | None
    locked_by: str | None
    payload: dict[str, Any]
    result: dict[str, Any] | None
    error_message: str | None
    created_by: uuid.UUID | None
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    """Paged list of jobs."""

    items: list[JobResponse]
    total: int
    limit: int
    offset: int
