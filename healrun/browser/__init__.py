"""Browser session handling."""

from healrun.browser.capture import capture_logs

__all__ = ["capture_logs"]
