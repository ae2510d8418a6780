"""Rate limit bucket cleanup service."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession

from eventrelay.config import Settings
from eventrelay.db.models import RateLimitBucket, utcnow

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    """Result of a cleanup operation."""

    deleted_count: int
    dry_run: bool
    cutoff_date: datetime


class RateLimitCleanupService:
    """Deletes rate limit counters whose window closed long ago.

    Only ``rate_limits`` rows are purged. Outbox rows, delivery attempts and
    audit entries are kept indefinitely.
    """

    def __init__(self, settings: Settings, session: AsyncSession):
        self.settings = settings
        self.session = session

    def _get_cutoff_date(self, retention_seconds: int | None = None) -> datetime:
        """Calculate the cutoff date for cleanup."""
        seconds = retention_seconds or self.settings.rate_limit_retention_seconds
        return utcnow() - timedelta(seconds=seconds)

    async def cleanup(
        self,
        dry_run: bool = False,
        retention_seconds: int | None = None,
    ) -> CleanupResult:
        """Delete buckets not touched within the retention period.

        Deletion runs in batches of ``rate_limit_cleanup_batch_size``, each
        committed on its own.

        Args:
            dry_run: If True, only count records without deleting.
            retention_seconds: Override the configured retention period.

        Returns:
            CleanupResult with the number of deleted records.
        """
        cutoff_date = self._get_cutoff_date(retention_seconds)
        batch_size = self.settings.rate_limit_cleanup_batch_size

        if dry_run:
            count_stmt = (
                select(func.count())
                .select_from(RateLimitBucket)
                .where(RateLimitBucket.updated_at < cutoff_date)
            )
            total_count = (await self.session.execute(count_stmt)).scalar() or 0
            logger.info(
                f"Dry run: would delete {total_count} rate limit buckets older than {cutoff_date}"
            )
            return CleanupResult(deleted_count=total_count, dry_run=True, cutoff_date=cutoff_date)

        total_deleted = 0
        while True:
            select_stmt = (
                select(RateLimitBucket.key, RateLimitBucket.bucket)
                .where(RateLimitBucket.updated_at < cutoff_date)
                .limit(batch_size)
            )
            keys = [tuple(row) for row in (await self.session.execute(select_stmt)).all()]
            if not keys:
                break

            delete_stmt = delete(RateLimitBucket).where(
                tuple_(RateLimitBucket.key, RateLimitBucket.bucket).in_(keys)
            )
            await self.session.execute(delete_stmt)
            await self.session.commit()

            total_deleted += len(keys)
            logger.debug(f"Deleted batch of {len(keys)} rate limit buckets")

        if total_deleted:
            logger.info(f"Deleted {total_deleted} rate limit buckets older than {cutoff_date}")

        return CleanupResult(deleted_count=total_deleted, dry_run=False, cutoff_date=cutoff_date)
