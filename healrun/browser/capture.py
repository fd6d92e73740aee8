"""
Log capture from a browser session.
"""

from typing import Optional

from healrun.config.settings import Settings, get_settings
from healrun.core.interfaces import BrowserDriver
from healrun.core.types import CapturedLogs, utc_now
from healrun.evaluation.log_parser import parse_logs


async def capture_logs(
    driver: BrowserDriver,
    page_path: str = "",
    settings: Optional[Settings] = None,
) -> CapturedLogs:
    """
    Drain and parse both log channels of a session.

    Reads always clear the driver buffers, so consecutive captures never
    overlap and nothing emitted between them is lost.

    Args:
        driver: Session to read from
        page_path: Page the capture belongs to
        settings: Capture limits and filters

    Returns:
        Freshly parsed CapturedLogs
    """
    settings = settings or get_settings()
    console_raw = await driver.read_console(
        settings.console_log_limit, settings.console_log_pattern, clear=True
    )
    network_raw = await driver.read_network(
        settings.network_log_limit, settings.network_url_pattern, clear=True
    )
    return parse_logs(console_raw, network_raw, page_path=page_path, captured_at=utc_now())
