"""
Error aggregation across scenario results.

Clusters DetectedErrors by code into ErrorReports carrying occurrence
counts, affected scenarios and first/last timestamps.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from healrun.core.types import (
    DetectedError,
    ErrorReport,
    ErrorSeverity,
    TestResult,
)
from healrun.security.sanitizer import DataSanitizer

SEVERITY_RANK = {ErrorSeverity.LOW: 0, ErrorSeverity.MEDIUM: 1, ErrorSeverity.HIGH: 2}
MAX_MESSAGE_LENGTH = 200


@dataclass
class ErrorMetrics:
    """Running totals for one error code."""
    first: DetectedError
    count: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    severity: ErrorSeverity = ErrorSeverity.LOW
    scenarios: List[str] = field(default_factory=list)
    exposes_internal_info: bool = False
    is_retryable: bool = False

    def update(self, error: DetectedError, scenario: str) -> None:
        """Update metrics with a new occurrence."""
        self.count += 1

        if self.first_seen is None or error.timestamp < self.first_seen:
            self.first_seen = error.timestamp
        if self.last_seen is None or error.timestamp > self.last_seen:
            self.last_seen = error.timestamp

        if SEVERITY_RANK[error.severity] > SEVERITY_RANK[self.severity]:
            self.severity = error.severity
        if scenario not in self.scenarios:
            self.scenarios.append(scenario)

        self.exposes_internal_info = self.exposes_internal_info or error.exposes_internal_info
        self.is_retryable = self.is_retryable or error.is_retryable


class ErrorAggregator:
    """Aggregates detected errors from many scenario results."""

    def __init__(self, sanitizer: Optional[DataSanitizer] = None):
        self.sanitizer = sanitizer or DataSanitizer()
        self.metrics: Dict[str, ErrorMetrics] = {}

    def add_error(self, error: DetectedError, scenario: str) -> None:
        metrics = self.metrics.get(error.code)
        if metrics is None:
            metrics = ErrorMetrics(first=error, severity=error.severity)
            self.metrics[error.code] = metrics
        metrics.update(error, scenario)

    def add_result(self, result: TestResult) -> None:
        for error in result.errors:
            self.add_error(error, result.scenario)

    def display_message(self, metrics: ErrorMetrics) -> str:
        """Representative message; redacted when any occurrence leaks internals."""
        message = metrics.first.message
        if metrics.exposes_internal_info:
            return self.sanitizer.redact_message(message, MAX_MESSAGE_LENGTH)
        return message[:MAX_MESSAGE_LENGTH]

    def get_reports(self) -> List[ErrorReport]:
        """Error clusters sorted by occurrence count, most frequent first."""
        reports = [
            ErrorReport(
                code=code,
                message=self.display_message(metrics),
                severity=metrics.severity,
                source=metrics.first.source,
                count=metrics.count,
                scenarios=list(metrics.scenarios),
                first_occurrence=metrics.first_seen,
                last_occurrence=metrics.last_seen,
                exposes_internal_info=metrics.exposes_internal_info,
                is_retryable=metrics.is_retryable,
            )
            for code, metrics in self.metrics.items()
        ]
        # Stable sort keeps first-seen order among equal counts
        reports.sort(key=lambda r: r.count, reverse=True)
        return reports
