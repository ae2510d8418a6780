"""Database-backed fixed-window rate limiting.

Counters live in the ``rate_limits`` table so every instance shares the same
budget. Each call upserts the ``(key, window)`` row and reads the new count
back in a single statement.
"""

import logging
import math
import time
from dataclasses import dataclass

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.db.models import RateLimitBucket, utcnow
from eventrelay.db.session import dialect_name

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    count: int
    limit: int
    reset_after: float

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    @property
    def retry_after(self) -> int:
        """Whole seconds until the current window closes."""
        return max(math.ceil(self.reset_after), 1)


class RateLimitExceeded(Exception):
    """Raised when a rate limited operation is over budget."""

    def __init__(self, key: str, result: RateLimitResult):
        self.key = key
        self.result = result
        super().__init__(f"Rate limit exceeded for {key}, retry after {result.retry_after}s")


def retry_rate_limit_key(tenant_id: object) -> str:
    """Key for the per-tenant manual webhook retry budget."""
    return f"webhook-retry:{tenant_id}"


async def check_rate_limit(
    session: AsyncSession,
    key: str,
    max_requests: int,
    window_seconds: int,
    now: float | None = None,
) -> RateLimitResult:
    """Count one request against ``key`` and report whether it is allowed."""
    now = time.time() if now is None else now
    bucket = int(now // window_seconds)
    reset_after = (bucket + 1) * window_seconds - now

    insert = pg_insert if dialect_name(session) == "postgresql" else sqlite_insert
    stmt = insert(RateLimitBucket).values(key=key, bucket=bucket, count=1, updated_at=utcnow())
    stmt = stmt.on_conflict_do_update(
        index_elements=[RateLimitBucket.key, RateLimitBucket.bucket],
        set_={"count": RateLimitBucket.count + 1, "updated_at": utcnow()},
    ).returning(RateLimitBucket.count)

    result = await session.execute(stmt)
    count = result.scalar_one()

    allowed = count <= max_requests
    if not allowed:
        logger.warning(f"Rate limit exceeded for {key}: {count}/{max_requests}")
    return RateLimitResult(
        allowed=allowed,
        count=count,
        limit=max_requests,
        reset_after=reset_after,
    )


async def enforce_rate_limit(
    session: AsyncSession,
    key: str,
    max_requests: int,
    window_seconds: int,
) -> RateLimitResult:
    """Like check_rate_limit, but raise RateLimitExceeded when refused."""
    result = await check_rate_limit(session, key, max_requests, window_seconds)
    if not result.allowed:
        raise RateLimitExceeded(key, result)
    return result
