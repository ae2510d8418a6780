"""Rate limit bucket cleanup module."""

from eventrelay.cleanup.service import CleanupResult, RateLimitCleanupService
from eventrelay.cleanup.worker import CleanupWorker

__all__ = [
    "CleanupResult",
    "CleanupWorker",
    "RateLimitCleanupService",
]
