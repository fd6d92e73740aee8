"""
Custom exception hierarchy for healrun error handling.

Step and assertion failures are recorded as data on results. These
exceptions cover driver failures and faults in the orchestration itself.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class HealrunError(Exception):
    """Base exception for all healrun errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None
        }


class RetryableError(HealrunError):
    """Base class for errors that can be retried."""

    def __init__(
        self,
        message: str,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.retry_count = 0

    def increment_retry(self) -> None:
        """Increment retry counter."""
        self.retry_count += 1

    def can_retry(self) -> bool:
        """Check if error can be retried."""
        return self.retry_count < self.max_retries


class NonRetryableError(HealrunError):
    """Base class for errors that should not be retried."""
    pass


class StepFailedError(RetryableError):
    """A step ran but did not achieve its intended effect."""

    def __init__(self, message: str, step_id: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.step_id = step_id
        self.details.update({"step_id": step_id})


class DriverError(RetryableError):
    """A browser driver operation did not achieve its effect."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        descriptor: Optional[str] = None,
        url: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.action = action
        self.descriptor = descriptor
        self.url = url
        self.details.update({
            "action": action,
            "descriptor": descriptor,
            "url": url
        })


class StepTimeoutError(RetryableError):
    """A step exceeded its deadline."""

    def __init__(
        self,
        message: str,
        timeout_ms: int,
        step_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.timeout_ms = timeout_ms
        self.step_id = step_id
        self.details.update({
            "timeout_ms": timeout_ms,
            "step_id": step_id
        })


class ScenarioValidationError(NonRetryableError):
    """A scenario definition failed validation."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        failed_rules: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.source = source
        self.failed_rules = failed_rules or []
        self.details.update({
            "source": source,
            "failed_rules": self.failed_rules
        })


class OrchestrationError(NonRetryableError):
    """Fault in the orchestrator itself, never retried."""
    pass
