"""
Evaluation of captured signals: log parsing, error classification and
outcome comparison.
"""

from healrun.evaluation.comparator import compare, compare_all, summarize_comparison
from healrun.evaluation.error_detection import (
    ERROR_PATTERNS,
    detect_console_error,
    detect_errors,
    detect_network_error,
)
from healrun.evaluation.log_parser import (
    get_log_summary,
    parse_console_messages,
    parse_logs,
    parse_network_requests,
)

__all__ = [
    "compare",
    "compare_all",
    "summarize_comparison",
    "ERROR_PATTERNS",
    "detect_console_error",
    "detect_errors",
    "detect_network_error",
    "get_log_summary",
    "parse_console_messages",
    "parse_logs",
    "parse_network_requests",
]
