"""
Unit tests for the exception hierarchy.
"""

from datetime import datetime

from healrun.error_handling.exceptions import (
    DriverError,
    HealrunError,
    NonRetryableError,
    OrchestrationError,
    RetryableError,
    ScenarioValidationError,
    StepFailedError,
    StepTimeoutError,
)


class TestHealrunError:
    """Test base exception."""

    def test_defaults(self):
        error = HealrunError("Something broke")

        assert str(error) == "Something broke"
        assert error.error_code == "HealrunError"
        assert error.details == {}
        assert error.cause is None
        assert isinstance(error.timestamp, datetime)

    def test_to_dict(self):
        cause = ValueError("bad input")
        error = HealrunError(
            "Wrapped", error_code="CUSTOM", details={"key": "value"}, cause=cause
        )

        data = error.to_dict()

        assert data["error_type"] == "HealrunError"
        assert data["error_code"] == "CUSTOM"
        assert data["message"] == "Wrapped"
        assert data["details"] == {"key": "value"}
        assert data["cause"] == "bad input"
        assert "timestamp" in data


class TestRetryableError:
    """Test retry bookkeeping."""

    def test_retry_budget(self):
        error = RetryableError("Flaky", max_retries=2, retry_delay_ms=500)

        assert error.retry_delay_ms == 500
        assert error.can_retry() is True
        error.increment_retry()
        error.increment_retry()
        assert error.retry_count == 2
        assert error.can_retry() is False


class TestSpecificErrors:
    """Test details carried by concrete exceptions."""

    def test_driver_error(self):
        error = DriverError(
            "Element not found: Save", action="click", descriptor="Save", url="http://app.test/"
        )

        assert isinstance(error, RetryableError)
        assert error.details == {"action": "click", "descriptor": "Save", "url": "http://app.test/"}

    def test_step_errors(self):
        failed = StepFailedError("Text not found", step_id="check")
        timed_out = StepTimeoutError("Timed out", timeout_ms=5000, step_id="wait")

        assert failed.details["step_id"] == "check"
        assert timed_out.timeout_ms == 5000
        assert timed_out.details == {"timeout_ms": 5000, "step_id": "wait"}

    def test_non_retryable(self):
        validation = ScenarioValidationError(
            "invalid", source="auth.scenario.json", failed_rules=["steps.0.action: bad"]
        )

        assert isinstance(validation, NonRetryableError)
        assert isinstance(OrchestrationError("bug"), NonRetryableError)
        assert validation.details["failed_rules"] == ["steps.0.action: bad"]
        assert validation.error_code == "ScenarioValidationError"
