"""
Unit tests for the Playwright session with a mocked page.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, call

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import FakeDriver
from healrun.browser.capture import capture_logs
from healrun.browser.driver import PlaywrightSession
from healrun.core.types import ConsoleLevel
from healrun.error_handling.exceptions import DriverError


def locator(count=0):
    loc = MagicMock()
    loc.count = AsyncMock(return_value=count)
    loc.first = MagicMock()
    loc.first.click = AsyncMock()
    loc.first.fill = AsyncMock()
    return loc


@pytest.fixture
def page():
    page = MagicMock()
    page.url = "http://app.test/"
    page.goto = AsyncMock()
    page.keyboard.press = AsyncMock()
    for name in ("locator", "get_by_label", "get_by_placeholder", "get_by_role", "get_by_test_id", "get_by_text"):
        getattr(page, name).return_value = locator(0)
    return page


@pytest.fixture
def context():
    context = MagicMock()
    context.close = AsyncMock()
    return context


@pytest.fixture
def session(context, page, settings):
    return PlaywrightSession(context, page, settings)


def request(resource_type="fetch", method="POST", url="http://app.test/api/generate-course"):
    req = MagicMock()
    req.resource_type = resource_type
    req.method = method
    req.url = url
    return req


class TestEventBuffering:
    """Page events become raw log lines."""

    def test_listeners_registered(self, session, page):
        events = [c.args[0] for c in page.on.call_args_list]

        assert events == ["console", "pageerror", "request", "response", "requestfailed"]

    @pytest.mark.asyncio
    async def test_console_line_with_location(self, session):
        session._on_console(SimpleNamespace(
            type="error",
            text="boom",
            location={"url": "http://app.test/app.js", "lineNumber": 3, "columnNumber": 7},
        ))
        session._on_console(SimpleNamespace(type="assert", text="bad state", location={}))

        assert await session.read_console(10) == (
            "[error] boom (http://app.test/app.js:3:7)\n[error] bad state"
        )

    @pytest.mark.asyncio
    async def test_page_error_uses_stack(self, session):
        session._on_page_error(SimpleNamespace(
            message="x is undefined",
            stack="TypeError: x is undefined\n    at render (app.js:1:1)",
        ))

        assert (await session.read_console(10)).startswith("[error] TypeError: x is undefined")

    @pytest.mark.asyncio
    async def test_response_line(self, session):
        req = request()
        session._on_request(req)
        session._on_response(SimpleNamespace(
            request=req, url=req.url, status=503, status_text="Service Unavailable"
        ))

        line = await session.read_network(10)
        assert line.startswith("POST http://app.test/api/generate-course 503 Service Unavailable")
        assert line.endswith("ms")

    @pytest.mark.asyncio
    async def test_static_assets_ignored(self, session):
        req = request(resource_type="image", method="GET", url="http://app.test/logo.png")
        session._on_request(req)
        session._on_response(SimpleNamespace(request=req, url=req.url, status=200, status_text="OK"))

        assert await session.read_network(10) == ""

    @pytest.mark.asyncio
    async def test_failed_request(self, session):
        req = request(method="GET", url="http://app.test/api/me")
        req.failure = "net::ERR_CONNECTION_REFUSED"

        session._on_request_failed(req)

        assert await session.read_network(10) == "GET http://app.test/api/me failed net::ERR_CONNECTION_REFUSED"

    @pytest.mark.asyncio
    async def test_read_filters_limits_and_clears(self, session):
        for text in ("one", "two", "three"):
            session._on_console(SimpleNamespace(type="log", text=text, location=None))

        assert await session.read_console(1) == "[log] three"
        assert await session.read_console(10, pattern="t") == "[log] two\n[log] three"
        await session.read_console(10, clear=True)
        assert await session.read_console(10) == ""


class TestPageOperations:
    """Navigation, element resolution and interactions."""

    @pytest.mark.asyncio
    async def test_navigate_failure(self, session, page):
        page.goto.side_effect = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")

        with pytest.raises(DriverError) as exc_info:
            await session.navigate("http://nowhere.test/")

        assert exc_info.value.action == "navigate"
        assert "ERR_NAME_NOT_RESOLVED" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_find_by_role_noun(self, session, page):
        button = locator(1)
        page.get_by_role.side_effect = lambda role, name: button if role == "button" and name == "Sign in" else locator(0)

        ref = await session.find("Sign in button")

        assert ref == "e1"
        assert page.get_by_role.call_args_list[0] == call("button", name="Sign in")

        await session.act(ref, "click")
        button.first.click.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_css_descriptor(self, session, page):
        outline = locator(1)
        page.locator.return_value = outline

        assert await session.find('[data-testid="course-outline"]') == "e1"
        page.get_by_label.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_missing(self, session):
        assert await session.find("Nothing here") is None

    @pytest.mark.asyncio
    async def test_act_failure_wrapped(self, session, page):
        field = locator(1)
        field.first.fill.side_effect = PlaywrightError("element is not editable")
        page.get_by_label.return_value = field

        ref = await session.find("Email")
        with pytest.raises(DriverError, match="type failed: element is not editable"):
            await session.act(ref, "type", "qa@example.com")

    @pytest.mark.asyncio
    async def test_stale_reference(self, session):
        with pytest.raises(DriverError, match="Stale element reference"):
            await session.act("e9", "click")

    @pytest.mark.asyncio
    async def test_page_level_key(self, session, page):
        await session.act(None, "key", "Escape")

        page.keyboard.press.assert_awaited_once_with("Escape")

    @pytest.mark.asyncio
    async def test_close_once(self, session, context):
        await session.close()
        await session.close()

        context.close.assert_awaited_once()


class TestCaptureLogs:
    """Draining both channels into CapturedLogs."""

    @pytest.mark.asyncio
    async def test_drains_and_parses(self, settings):
        driver = FakeDriver()
        driver.emit_console("[warning] slow render")
        driver.emit_network("GET http://app.test/api/me 200 OK 12ms")

        logs = await capture_logs(driver, "/dashboard", settings)

        assert logs.page_path == "/dashboard"
        assert logs.console[0].level == ConsoleLevel.WARNING
        assert logs.network[0].status == 200
        assert driver.console_lines == []
        assert driver.network_lines == []

    @pytest.mark.asyncio
    async def test_pattern_filters(self, settings):
        settings.network_url_pattern = "/api/"
        driver = FakeDriver()
        driver.emit_network("GET http://app.test/_next/chunk.js 200 OK", "GET http://app.test/api/me 200 OK")

        logs = await capture_logs(driver, settings=settings)

        assert [r.url for r in logs.network] == ["http://app.test/api/me"]
