"""
Error handling and recovery for healrun.

The auto-fix engine and error aggregator live in their own modules
(``healrun.error_handling.auto_fix``, ``healrun.error_handling.aggregator``)
and are imported from there.
"""

from .exceptions import (
    DriverError,
    HealrunError,
    NonRetryableError,
    OrchestrationError,
    RetryableError,
    ScenarioValidationError,
    StepFailedError,
    StepTimeoutError,
)

from .recovery import (
    ExponentialBackoffStrategy,
    FixedDelayStrategy,
    RetryStrategy,
)

__all__ = [
    # Exceptions
    "HealrunError",
    "RetryableError",
    "NonRetryableError",
    "StepFailedError",
    "DriverError",
    "StepTimeoutError",
    "ScenarioValidationError",
    "OrchestrationError",

    # Recovery
    "RetryStrategy",
    "ExponentialBackoffStrategy",
    "FixedDelayStrategy",
]
