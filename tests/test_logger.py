"""
Tests for healrun logging utilities.
"""

import json
import logging

from healrun.monitoring.logger import (
    JSONFormatter,
    SanitizingHandler,
    get_logger,
    log_test_event,
)


def make_record(msg, **extra):
    record = logging.LogRecord(
        name="healrun.orchestration.orchestrator",
        level=logging.INFO,
        pathname=__file__,
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """JSON output with scenario context."""

    def test_context_fields_included(self):
        output = json.loads(JSONFormatter().format(
            make_record("Executing step", scenario="login succeeds", step_id="submit")
        ))

        assert output["level"] == "INFO"
        assert output["message"] == "Executing step"
        assert output["scenario"] == "login succeeds"
        assert output["step_id"] == "submit"
        assert "flow" not in output

    def test_sanitized(self):
        output = json.loads(JSONFormatter().format(make_record("Sent Bearer abc123")))

        assert output["message"] == "Sent Bearer [TOKEN]"

    def test_sanitize_disabled(self):
        output = json.loads(JSONFormatter(sanitize=False).format(make_record("Sent Bearer abc123")))

        assert output["message"] == "Sent Bearer abc123"


class TestSanitizingHandler:
    """Wrapped handlers only see sanitized records."""

    def test_emits_sanitized(self):
        seen = []

        class Collect(logging.Handler):
            def emit(self, record):
                seen.append(record.getMessage())

        SanitizingHandler(Collect()).emit(make_record("login password=hunter2"))

        assert seen == ["login [CREDENTIAL]"]


class TestHelpers:
    """Logger helpers."""

    def test_get_logger_with_context(self, caplog):
        logger = get_logger("healrun.test", scenario="create course")

        with caplog.at_level(logging.INFO, logger="healrun.test"):
            logger.info("hello")

        assert caplog.records[0].scenario == "create course"

    def test_plain_logger(self):
        assert isinstance(get_logger("healrun.test"), logging.Logger)

    def test_log_test_event(self, caplog):
        with caplog.at_level(logging.INFO, logger="healrun.test_events"):
            log_test_event("scenario_finished", "create course", data={"status": "pass"})

        record = caplog.records[0]
        assert record.getMessage() == "Test event: scenario_finished"
        assert record.event_type == "scenario_finished"
        assert record.status == "pass"
