"""Bounded exponential backoff."""

from __future__ import annotations

from dataclasses import dataclass

from electorate.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with an attempt limit.

    ``delay(n)`` is the wait after the n-th consecutive failure:
    ``delay_initial * multiplier ** (n - 1)`` capped at ``delay_max``.
    """

    delay_initial: float = 0.5
    delay_max: float = 30.0
    multiplier: float = 2.0
    max_attempts: int = 10  # 0 = retry forever

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            delay_initial=settings.observe_retry_delay_initial,
            delay_max=settings.observe_retry_delay_max,
            multiplier=settings.observe_retry_multiplier,
            max_attempts=settings.observe_max_retries,
        )

    def delay(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.delay_initial * self.multiplier ** (attempt - 1), self.delay_max)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts
