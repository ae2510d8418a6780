"""Operations API endpoints (health, readiness)."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay import __version__
from eventrelay.config import Settings, get_settings
from eventrelay.db.session import get_session
from eventrelay.metrics.definitions import OUTBOX_DEPTH
from eventrelay.schemas import HealthResponse, OutboxStats, ReadyResponse
from eventrelay.webhook.outbox import get_outbox_stats

router = APIRouter(tags=["operations"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """Health check endpoint - returns server status."""
    return HealthResponse(
        status="ok",
        version=__version__,
        instance_id=settings.instance_id,
    )


async def _get_outbox_stats(session: AsyncSession) -> OutboxStats:
    """Outbox counts across all tenants; also refreshes the depth gauge."""
    counts = await get_outbox_stats(session)
    for outbox_status, count in counts.items():
        OUTBOX_DEPTH.labels(status=outbox_status).set(count)
    return OutboxStats(**counts)


@router.get("/ready", response_model=ReadyResponse)
async def ready_check(
    session: AsyncSession = Depends(get_session),
    include_queue: bool = Query(False, description="Include outbox statistics"),
) -> ReadyResponse:
    """Readiness check endpoint - verifies database connectivity.

    Query parameters:
    - include_queue: Include outbox counts per status
    """
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not ready",
        ) from e

    response = ReadyResponse(status="ok", database="ok")
    if include_queue:
        response.outbox = await _get_outbox_stats(session)
    return response
