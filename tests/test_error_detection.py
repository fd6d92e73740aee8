"""
Unit tests for runtime error classification.
"""

import pytest

from healrun.core.types import (
    CapturedLogs,
    ConsoleLevel,
    ConsoleMessage,
    ErrorSeverity,
    ErrorSource,
    NetworkRequest,
)
from healrun.evaluation.error_detection import (
    ERROR_PATTERNS,
    check_exposes_internal_info,
    detect_console_error,
    detect_errors,
    detect_network_error,
    endpoint_of,
    error_signature,
    extract_stack_trace,
    find_pattern,
)
from healrun.evaluation.log_parser import UNKNOWN_URL


def console(message, level=ConsoleLevel.ERROR):
    return ConsoleMessage(level=level, message=message)


class TestConsoleClassification:
    """Test classification of console messages."""

    @pytest.mark.parametrize("message,code", [
        ("Warning: Text content did not match. Server: \"a\" Client: \"b\"", "HYDRATION_ERROR"),
        ("Hydration failed because the initial UI does not match", "HYDRATION_ERROR"),
        ("ChunkLoadError: Loading chunk 42 failed.", "CHUNK_LOAD_ERROR"),
        ("AI generation timed out after 180s", "AI_TIMEOUT"),
        ("Course generation failed: empty response", "AI_PROCESSING_FAILED"),
        ("Too many requests, slow down", "RATE_LIMITED"),
        ("TypeError: Failed to fetch", "NETWORK_ERROR"),
        ("Error: Unauthorized", "UNAUTHORIZED"),
        ("JWT expired", "SESSION_EXPIRED"),
        ("ZodError: invalid input", "VALIDATION_ERROR"),
        ("QuotaExceededError: storage full", "STORAGE_QUOTA_EXCEEDED"),
        ("Unhandled promise rejection: oops", "UNHANDLED_EXCEPTION"),
    ])
    def test_known_patterns(self, message, code):
        """Known messages map to their taxonomy code."""
        error = detect_console_error(console(message))

        assert error is not None
        assert error.code == code
        assert error.source == ErrorSource.CONSOLE
        assert error.severity == find_pattern(code).severity
        assert error.is_retryable == find_pattern(code).auto_fixable

    def test_unmatched_error_falls_back(self):
        """Unmatched error-level messages become CONSOLE_ERROR."""
        error = detect_console_error(console("Something odd happened"))

        assert error.code == "CONSOLE_ERROR"
        assert error.severity == ErrorSeverity.MEDIUM
        assert error.is_retryable is False

    def test_non_error_without_hint_ignored(self):
        """Info messages that do not mention errors are not errors."""
        assert detect_console_error(console("Page loaded", ConsoleLevel.INFO)) is None

    @pytest.mark.parametrize("level", [ConsoleLevel.INFO, ConsoleLevel.LOG, ConsoleLevel.WARNING])
    def test_unmatched_non_error_mentioning_errors_ignored(self, level):
        """Only error-level messages fall back to CONSOLE_ERROR."""
        assert detect_console_error(console("Upload finished, 0 errors found", level)) is None

    def test_unmatched_error_level_still_falls_back(self):
        error = detect_console_error(console("Upload finished, 0 errors found"))

        assert error.code == "CONSOLE_ERROR"

    def test_warning_matching_known_pattern_detected(self):
        error = detect_console_error(
            console("Hydration failed because the initial UI does not match", ConsoleLevel.WARNING)
        )

        assert error.code == "HYDRATION_ERROR"

    def test_step_attribution(self):
        error = detect_console_error(console("Boom"), step_id="submit")

        assert error.step_id == "submit"

    def test_first_pattern_wins(self):
        """Table order decides between overlapping patterns."""
        codes = [p.code for p in ERROR_PATTERNS]
        # "Failed to fetch dynamically imported module" is both a chunk and network signal
        error = detect_console_error(console("Failed to fetch dynamically imported module: /x.js"))

        assert codes.index("CHUNK_LOAD_ERROR") < codes.index("NETWORK_ERROR")
        assert error.code == "CHUNK_LOAD_ERROR"

    def test_stack_trace_and_internal_info(self):
        """Stack frames and filesystem paths are flagged as leaking internals."""
        error = detect_console_error(
            console("Error: Failed at /Users/dev/app/src/file.ts:12:4\n    at load (http://app.test/app.js:3:9)")
        )

        assert error.exposes_internal_info is True
        assert error.stack_trace == "at load (http://app.test/app.js:3:9)"


class TestNetworkClassification:
    """Test classification of network requests."""

    def test_service_unavailable(self):
        """5xx statuses without a taxonomy entry become HTTP_{status}."""
        error = detect_network_error(NetworkRequest(
            url="http://app.test/api/generate-course?x=1",
            method="POST",
            status=503,
            status_text="Service Unavailable",
        ), step_id="generate")

        assert error.code == "HTTP_503"
        assert error.severity == ErrorSeverity.HIGH
        assert error.is_retryable is True
        assert error.source == ErrorSource.NETWORK
        assert error.api_endpoint == "/api/generate-course"
        assert error.network_status == 503
        assert error.step_id == "generate"
        assert error.message == "POST http://app.test/api/generate-course?x=1 returned 503 Service Unavailable"

    @pytest.mark.parametrize("status,code,retryable", [
        (429, "RATE_LIMITED", True),
        (408, "NETWORK_TIMEOUT", True),
        (401, "UNAUTHORIZED", False),
        (403, "FORBIDDEN", False),
        (404, "NOT_FOUND", False),
        (422, "VALIDATION_ERROR", False),
        (418, "HTTP_418", False),
        (500, "HTTP_500", True),
    ])
    def test_status_mapping(self, status, code, retryable):
        error = detect_network_error(NetworkRequest(url="http://app.test/api/x", status=status))

        assert error.code == code
        assert error.is_retryable is retryable

    def test_success_is_not_an_error(self):
        assert detect_network_error(NetworkRequest(url="http://app.test/api/x", status=204)) is None
        assert detect_network_error(NetworkRequest(url="http://app.test/api/x")) is None

    def test_transport_failure(self):
        """Failed transports are NETWORK_ERROR, high and retryable."""
        error = detect_network_error(NetworkRequest(
            url="http://app.test/api/x", failed=True, error_message="net::ERR_CONNECTION_RESET"
        ))

        assert error.code == "NETWORK_ERROR"
        assert error.severity == ErrorSeverity.HIGH
        assert error.is_retryable is True

    def test_response_body_leak(self):
        error = detect_network_error(NetworkRequest(
            url="http://app.test/api/x",
            status=500,
            response_body='{"error": "relation courses does not exist", "stack": "at q (/home/app/db.js:1:1)"}',
        ))

        assert error.exposes_internal_info is True


class TestHelpers:
    """Test detection helpers."""

    def test_detect_errors_order(self):
        """Console errors come first, then network, each in capture order."""
        logs = CapturedLogs(
            console=[console("Boom"), console("fine", ConsoleLevel.LOG)],
            network=[
                NetworkRequest(url="http://app.test/api/a", status=500),
                NetworkRequest(url="http://app.test/api/b", status=200),
            ],
        )
        errors = detect_errors(logs, step_id="s1")

        assert [e.code for e in errors] == ["CONSOLE_ERROR", "HTTP_500"]
        assert all(e.step_id == "s1" for e in errors)

    def test_endpoint_of(self):
        assert endpoint_of("http://app.test/api/x?y=1") == "/api/x"
        assert endpoint_of("/api/y") == "/api/y"
        assert endpoint_of(UNKNOWN_URL) is None

    def test_internal_info_checks(self):
        assert check_exposes_internal_info("password=hunter2") is True
        assert check_exposes_internal_info("Internal Server Error") is True
        assert check_exposes_internal_info("Please try again") is False
        assert check_exposes_internal_info(None) is False

    def test_extract_stack_trace_none(self):
        assert extract_stack_trace("no frames here") is None

    def test_signature(self):
        error = detect_network_error(NetworkRequest(url="http://app.test/api/a", status=503), step_id="s")

        assert error_signature(error) == ("HTTP_503", "/api/a", "s")

    def test_codes_unique(self):
        codes = [p.code for p in ERROR_PATTERNS]
        assert len(codes) == len(set(codes))
