"""
Monitoring module exports.
"""

from healrun.monitoring.logger import (
    get_logger,
    log_performance_metric,
    log_test_event,
    setup_logging,
    JSONFormatter,
    SanitizingHandler,
)

from healrun.monitoring.reporter import (
    generate_report,
    render_console_summary,
    render_html,
    render_json,
    render_markdown,
    save_report,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "log_test_event",
    "log_performance_metric",
    "JSONFormatter",
    "SanitizingHandler",

    # Reporter
    "generate_report",
    "render_console_summary",
    "render_html",
    "render_json",
    "render_markdown",
    "save_report",
]
