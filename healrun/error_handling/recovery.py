"""
Backoff strategies used to pace auto-fix retries.
"""

import logging
import random
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class RetryStrategy(ABC):
    """Abstract base class for retry strategies."""

    max_attempts: int

    @abstractmethod
    def get_delay_ms(self, attempt: int) -> int:
        """Calculate delay in milliseconds before the given attempt (1-based)."""
        pass

    def should_retry(self, attempts_made: int) -> bool:
        """Check whether another attempt is allowed."""
        if attempts_made >= self.max_attempts:
            logger.debug(
                "Retry budget exhausted",
                extra={"attempts_made": attempts_made, "max_attempts": self.max_attempts},
            )
            return False
        return True


class ExponentialBackoffStrategy(RetryStrategy):
    """Exponential backoff with optional jitter."""

    def __init__(
        self,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 30000,
        max_attempts: int = 3,
        multiplier: float = 2.0,
        jitter: bool = False
    ):
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.max_attempts = max_attempts
        self.multiplier = multiplier
        self.jitter = jitter

    def get_delay_ms(self, attempt: int) -> int:
        """Calculate exponential backoff delay with optional jitter."""
        delay = min(
            self.base_delay_ms * (self.multiplier ** (max(attempt, 1) - 1)),
            self.max_delay_ms
        )

        if self.jitter:
            # ±25%
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return int(delay)


class FixedDelayStrategy(RetryStrategy):
    """Constant wait before every attempt, used for throttled services."""

    def __init__(self, delay_ms: int = 10000, max_attempts: int = 1):
        self.delay_ms = delay_ms
        self.max_attempts = max_attempts

    def get_delay_ms(self, attempt: int) -> int:
        return self.delay_ms
