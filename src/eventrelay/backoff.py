"""Exponential backoff shared by the job queue and the webhook outbox."""

import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from eventrelay.config import Settings

# 2**32 seconds is far past any sane cap; keeps the float math finite
MAX_EXPONENT = 32


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff with additive jitter.

    ``delay(n) = min(base * 2**n + jitter * U[0, 1), cap)``
    """

    base: float = 1.0
    cap: float = 300.0
    jitter: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base=settings.retry_backoff_base,
            cap=settings.retry_backoff_cap,
            jitter=settings.retry_backoff_jitter,
        )

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Seconds to wait before the next try after ``attempt`` attempts."""
        exponent = min(max(attempt, 0), MAX_EXPONENT)
        return min(self.base * (2**exponent) + self.jitter * rng(), self.cap)

    def next_run_at(self, attempt: int, now: datetime | None = None) -> datetime:
        """Absolute time of the next try."""
        now = now or datetime.now(UTC)
        return now + timedelta(seconds=self.delay(attempt))
