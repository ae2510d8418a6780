"""Background worker for rate limit bucket cleanup."""

import asyncio
import contextlib
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventrelay.cleanup.service import CleanupResult, RateLimitCleanupService
from eventrelay.config import Settings, get_settings
from eventrelay.db.session import get_async_session_factory

logger = logging.getLogger(__name__)


class CleanupWorker:
    """Background worker that periodically purges expired rate limit buckets."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self._running = False
        self._task: asyncio.Task | None = None

    async def run_cleanup(self) -> CleanupResult:
        """Run a single cleanup operation.

        Returns:
            CleanupResult with deletion details.
        """
        factory = self.session_factory or get_async_session_factory()
        async with factory() as session:
            service = RateLimitCleanupService(self.settings, session)
            return await service.cleanup(dry_run=False)

    async def run(self) -> None:
        """Run the worker loop."""
        self._running = True
        interval_seconds = self.settings.rate_limit_cleanup_interval_seconds

        logger.info(
            f"Cleanup worker started (interval: {interval_seconds}s, "
            f"retention: {self.settings.rate_limit_retention_seconds}s)"
        )

        # Wait before first cleanup (don't cleanup immediately on startup)
        await asyncio.sleep(interval_seconds)

        while self._running:
            try:
                result = await self.run_cleanup()
                if result.deleted_count > 0:
                    logger.info(f"Cleanup worker deleted {result.deleted_count} rate limit buckets")
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in cleanup worker loop")
                # Wait before retrying on error
                await asyncio.sleep(60)

        logger.info("Cleanup worker stopped")

    def start(self) -> None:
        """Start the worker in the background."""
        if not self.settings.rate_limit_cleanup_enabled:
            logger.info("Cleanup worker disabled by configuration")
            return

        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop the worker."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    async def wait(self) -> None:
        """Wait for the worker to finish."""
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
