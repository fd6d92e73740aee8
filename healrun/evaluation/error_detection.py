"""
Classification of captured console and network signals into DetectedErrors.

Classification is a pure function of message text and HTTP status: an
ordered pattern table is scanned and the first matching entry wins.
Unmatched signals fall back to CONSOLE_ERROR or HTTP_{status}.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple
from urllib.parse import urlparse

from healrun.core.types import (
    CapturedLogs,
    ConsoleLevel,
    ConsoleMessage,
    DetectedError,
    ErrorSeverity,
    ErrorSource,
    FixStrategyType,
    NetworkRequest,
)
from healrun.evaluation.log_parser import UNKNOWN_URL


@dataclass(frozen=True)
class ErrorPattern:
    """One entry of the error taxonomy."""

    code: str
    description: str
    severity: ErrorSeverity
    auto_fixable: bool
    console_pattern: Optional[Pattern[str]] = None
    network_status: Tuple[int, ...] = ()
    fix_strategy: Optional[FixStrategyType] = None

    def matches_console(self, message: str) -> bool:
        return self.console_pattern is not None and bool(self.console_pattern.search(message))

    def matches_status(self, status: Optional[int]) -> bool:
        return status is not None and status in self.network_status


def _rx(pattern: str) -> Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


# First match wins, so specific entries come before general ones.
# 5xx statuses are intentionally absent and classify as HTTP_{status}.
ERROR_PATTERNS: Tuple[ErrorPattern, ...] = (
    ErrorPattern(
        code="HYDRATION_ERROR",
        description="Server and client render output differ",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=False,
        console_pattern=_rx(r"hydration|did not match\. server|server rendered html"),
        fix_strategy=FixStrategyType.REPORT_CODE_FIX,
    ),
    ErrorPattern(
        code="CHUNK_LOAD_ERROR",
        description="Script bundle failed to load",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=True,
        console_pattern=_rx(r"ChunkLoadError|Loading chunk \S+ failed|Failed to fetch dynamically imported module"),
    ),
    ErrorPattern(
        code="AI_TIMEOUT",
        description="AI processing did not finish in time",
        severity=ErrorSeverity.HIGH,
        auto_fixable=True,
        console_pattern=_rx(r"\b(?:ai|generation|llm|model)\b[^\n]{0,40}\btime(?:d[ -]?out|out)\b"),
        fix_strategy=FixStrategyType.WAIT_AND_RETRY,
    ),
    ErrorPattern(
        code="AI_PROCESSING_FAILED",
        description="AI processing returned an error",
        severity=ErrorSeverity.HIGH,
        auto_fixable=True,
        console_pattern=_rx(r"\b(?:ai|generation|llm)\b[^\n]{0,40}\bfail"),
    ),
    ErrorPattern(
        code="RATE_LIMITED",
        description="Request was throttled",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=True,
        console_pattern=_rx(r"rate[ _-]?limit|too many requests"),
        network_status=(429,),
        fix_strategy=FixStrategyType.WAIT_AND_RETRY,
    ),
    ErrorPattern(
        code="NETWORK_TIMEOUT",
        description="Request timed out",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=True,
        console_pattern=_rx(r"\btimed? ?out\b|ETIMEDOUT|\btimeout\b"),
        network_status=(408,),
    ),
    ErrorPattern(
        code="NETWORK_ERROR",
        description="Request could not be completed",
        severity=ErrorSeverity.HIGH,
        auto_fixable=True,
        console_pattern=_rx(r"Failed to fetch|NetworkError|Network request failed|net::ERR_|ECONNREFUSED|ECONNRESET"),
    ),
    ErrorPattern(
        code="UNAUTHORIZED",
        description="Request was not authenticated",
        severity=ErrorSeverity.HIGH,
        auto_fixable=False,
        console_pattern=_rx(r"\bunauthori[sz]ed\b|not authenticated"),
        network_status=(401,),
    ),
    ErrorPattern(
        code="SESSION_EXPIRED",
        description="Authentication session expired",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=False,
        console_pattern=_rx(r"session (?:has )?expired|jwt expired|token (?:has )?expired"),
    ),
    ErrorPattern(
        code="FORBIDDEN",
        description="Request was not permitted",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=False,
        console_pattern=_rx(r"\bforbidden\b|permission denied"),
        network_status=(403,),
    ),
    ErrorPattern(
        code="NOT_FOUND",
        description="Resource does not exist",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=False,
        console_pattern=_rx(r"\b404\b"),
        network_status=(404,),
    ),
    ErrorPattern(
        code="VALIDATION_ERROR",
        description="Request payload was rejected",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=False,
        console_pattern=_rx(r"validation (?:error|failed)|invalid input|ZodError"),
        network_status=(400, 422),
        fix_strategy=FixStrategyType.REPORT_CODE_FIX,
    ),
    ErrorPattern(
        code="DATABASE_ERROR",
        description="Backend data store failure",
        severity=ErrorSeverity.HIGH,
        auto_fixable=False,
        console_pattern=_rx(r"database|postgres|PGRST\d*|relation \S+ does not exist"),
    ),
    ErrorPattern(
        code="STORAGE_QUOTA_EXCEEDED",
        description="Storage quota exhausted",
        severity=ErrorSeverity.MEDIUM,
        auto_fixable=False,
        console_pattern=_rx(r"quota (?:has been )?exceeded|QuotaExceededError|storage limit"),
    ),
    ErrorPattern(
        code="SERVICE_UNAVAILABLE",
        description="Backend service is down",
        severity=ErrorSeverity.HIGH,
        auto_fixable=False,
        console_pattern=_rx(r"service unavailable"),
    ),
    ErrorPattern(
        code="UNHANDLED_EXCEPTION",
        description="Uncaught exception or promise rejection",
        severity=ErrorSeverity.HIGH,
        auto_fixable=False,
        console_pattern=_rx(r"unhandled(?: promise)? rejection|uncaught (?:\w*error|exception|\(in promise\))"),
    ),
)

PATTERNS_BY_CODE = {pattern.code: pattern for pattern in ERROR_PATTERNS}

CONSOLE_ERROR_HINT = _rx(r"error|fail|exception")

INTERNAL_INFO_PATTERNS: Tuple[Pattern[str], ...] = (
    # Stack frames
    re.compile(r"\bat\s+[\w.$<>\[\]]+\s+\([^)]+:\d+:\d+\)"),
    re.compile(r"^\s*at\s+\S+:\d+:\d+", re.MULTILINE),
    # Filesystem paths
    re.compile(r"/Users/|/home/|[A-Za-z]:\\"),
    # Credential-like words
    _rx(r"\b(?:password|passwd|secret|api[_-]?key|private[_-]?key|access[_-]?token|service[_-]?role)\b"),
    # Backend internals
    _rx(r"\b(?:database|postgres(?:ql)?|supabase)\b"),
    _rx(r"internal server error"),
    # Raw internal error JSON
    re.compile(r"\"type\"\s*:\s*\"error\"|\"stack\"\s*:"),
)

# Frame paths may hold one level of parentheses, e.g. webpack-internal:///(app-pages-browser)/...
STACK_FRAME_PATTERN = re.compile(
    r"\bat\s+[\w.$<>\[\]]+\s+\(((?:[^()]|\([^()]*\))+?):(\d+):\d+\)|^\s*at\s+(\S+?):(\d+):\d+",
    re.MULTILINE,
)


def find_pattern(code: str) -> Optional[ErrorPattern]:
    """Look up a taxonomy entry by code."""
    return PATTERNS_BY_CODE.get(code)


def check_exposes_internal_info(message: Optional[str]) -> bool:
    """True if the message leaks stack traces, paths, credentials or backend internals."""
    if not message:
        return False
    return any(pattern.search(message) for pattern in INTERNAL_INFO_PATTERNS)


def extract_stack_trace(message: str) -> Optional[str]:
    """Return the stack-frame lines of a message, if any."""
    frames = [
        line.strip()
        for line in message.splitlines()
        if re.match(r"^\s*at\s+\S", line)
    ]
    if frames:
        return "\n".join(frames)
    match = STACK_FRAME_PATTERN.search(message)
    return match.group(0).strip() if match else None


def endpoint_of(url: str) -> Optional[str]:
    """Path of a request URL without origin or query."""
    if not url or url == UNKNOWN_URL:
        return None
    parsed = urlparse(url)
    return parsed.path or url


def _matching_console_pattern(message: str) -> Optional[ErrorPattern]:
    for pattern in ERROR_PATTERNS:
        if pattern.matches_console(message):
            return pattern
    return None


def _matching_status_pattern(status: Optional[int]) -> Optional[ErrorPattern]:
    for pattern in ERROR_PATTERNS:
        if pattern.matches_status(status):
            return pattern
    return None


def detect_console_error(
    message: ConsoleMessage, step_id: Optional[str] = None
) -> Optional[DetectedError]:
    """
    Classify a console message.

    Messages that are neither error level nor mention error/fail/exception
    are ignored. Below error level only known patterns count; the generic
    CONSOLE_ERROR fallback is reserved for error-level messages.

    Args:
        message: Parsed console message
        step_id: Step the message is attributed to

    Returns:
        DetectedError or None
    """
    text = message.message
    if message.level != ConsoleLevel.ERROR and not CONSOLE_ERROR_HINT.search(text):
        return None

    pattern = _matching_console_pattern(text)
    common = dict(
        message=text,
        source=ErrorSource.CONSOLE,
        timestamp=message.timestamp,
        step_id=step_id,
        stack_trace=extract_stack_trace(text),
        exposes_internal_info=check_exposes_internal_info(text),
    )

    if pattern is not None:
        return DetectedError(
            code=pattern.code,
            severity=pattern.severity,
            is_retryable=pattern.auto_fixable,
            **common,
        )

    if message.level != ConsoleLevel.ERROR:
        return None

    return DetectedError(
        code="CONSOLE_ERROR",
        severity=ErrorSeverity.MEDIUM,
        is_retryable=False,
        **common,
    )


def detect_network_error(
    request: NetworkRequest, step_id: Optional[str] = None
) -> Optional[DetectedError]:
    """
    Classify a network request.

    Transport failures are always NETWORK_ERROR (high, retryable).
    Requests with status below 400 are not errors.

    Args:
        request: Parsed network request
        step_id: Step the request is attributed to

    Returns:
        DetectedError or None
    """
    endpoint = endpoint_of(request.url)

    if request.failed:
        pattern = PATTERNS_BY_CODE["NETWORK_ERROR"]
        detail = request.error_message or "request failed"
        message = f"{request.method} {request.url} failed: {detail}"
        return DetectedError(
            code=pattern.code,
            message=message,
            severity=ErrorSeverity.HIGH,
            source=ErrorSource.NETWORK,
            timestamp=request.timestamp,
            step_id=step_id,
            api_endpoint=endpoint,
            is_retryable=True,
            exposes_internal_info=check_exposes_internal_info(detail),
        )

    status = request.status
    if status is None or status < 400:
        return None

    message = f"{request.method} {request.url} returned {status} {request.status_text}".rstrip()
    body = request.response_body or ""
    exposes = check_exposes_internal_info(body) or check_exposes_internal_info(request.status_text)

    pattern = _matching_status_pattern(status)
    if pattern is not None:
        return DetectedError(
            code=pattern.code,
            message=message,
            severity=pattern.severity,
            source=ErrorSource.NETWORK,
            timestamp=request.timestamp,
            step_id=step_id,
            api_endpoint=endpoint,
            network_status=status,
            is_retryable=pattern.auto_fixable,
            exposes_internal_info=exposes,
        )

    return DetectedError(
        code=f"HTTP_{status}",
        message=message,
        severity=ErrorSeverity.HIGH if status >= 500 else ErrorSeverity.MEDIUM,
        source=ErrorSource.NETWORK,
        timestamp=request.timestamp,
        step_id=step_id,
        api_endpoint=endpoint,
        network_status=status,
        is_retryable=status >= 500,
        exposes_internal_info=exposes,
    )


def detect_errors(logs: CapturedLogs, step_id: Optional[str] = None) -> List[DetectedError]:
    """
    Classify every console message and network request in a capture.

    Args:
        logs: Captured logs
        step_id: Step the capture is attributed to

    Returns:
        Detected errors, console first, in capture order
    """
    errors: List[DetectedError] = []
    for message in logs.console:
        error = detect_console_error(message, step_id)
        if error is not None:
            errors.append(error)
    for request in logs.network:
        error = detect_network_error(request, step_id)
        if error is not None:
            errors.append(error)
    return errors


def error_signature(error: DetectedError) -> Tuple[str, Optional[str], Optional[str]]:
    """Identity of an error for deduplicating fix attempts."""
    return (error.code, error.api_endpoint, error.step_id)
