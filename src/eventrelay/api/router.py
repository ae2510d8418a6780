"""Main API router combining all endpoints."""

from fastapi import APIRouter, Depends

from eventrelay.api import jobs, operations, webhooks
from eventrelay.api.dependencies import require_api_key

api_router = APIRouter(prefix="/api/v1")

# Health and readiness stay unauthenticated for probes
api_router.include_router(operations.router)
api_router.include_router(webhooks.router, dependencies=[Depends(require_api_key)])
api_router.include_router(jobs.router, dependencies=[Depends(require_api_key)])
