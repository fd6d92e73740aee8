"""
Playwright browser driver implementation.

One PlaywrightSessionFactory owns the browser process; every session it
opens is an isolated browser context with a single page.
"""

import asyncio
import re
from typing import Dict, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    ConsoleMessage,
    Locator,
    Page,
    Request,
    Response,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError

from healrun.config.settings import Settings, get_settings
from healrun.core.interfaces import BrowserDriver, BrowserSessionFactory
from healrun.error_handling.exceptions import DriverError
from healrun.monitoring.logger import get_logger, log_performance_metric

# Network traffic worth classifying; static assets are left out.
TRACKED_RESOURCE_TYPES = frozenset({"document", "fetch", "xhr"})

CONSOLE_LEVELS = {
    "log": "log",
    "info": "info",
    "debug": "debug",
    "warning": "warning",
    "error": "error",
    "assert": "error",
    "trace": "debug",
}

# Trailing noun of a descriptor such as "Sign in button" to an ARIA role.
ROLE_NOUNS = {
    "button": "button",
    "link": "link",
    "checkbox": "checkbox",
    "radio": "radio",
    "tab": "tab",
    "heading": "heading",
    "textbox": "textbox",
    "field": "textbox",
    "input": "textbox",
    "dropdown": "combobox",
    "select": "combobox",
    "option": "option",
    "menuitem": "menuitem",
    "dialog": "dialog",
}

CSS_SHAPED = re.compile(r"^(?:[#.\[]|[a-z][\w-]*(?:[#.\[:]|\s*>)|(?:css|text|role|xpath|id|data-testid)=)")

MARKER_SCRIPT = """
() => Array.from(document.querySelectorAll('[data-testid], [id]'))
    .filter(el => el.offsetParent !== null || el.tagName === 'BODY')
    .slice(0, 500)
    .map(el => {
        const parts = [`- ${el.tagName.toLowerCase()}`];
        if (el.dataset.testid) parts.push(`[data-testid="${el.dataset.testid}"]`);
        if (el.id) parts.push(`#${el.id}`);
        return parts.join(' ');
    })
    .join('\\n')
"""


class PlaywrightSession(BrowserDriver):
    """A single page driven through Playwright, with buffered log channels."""

    def __init__(self, context: BrowserContext, page: Page, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.logger = get_logger("healrun.browser.driver")
        self._context = context
        self._page = page
        self._console: List[str] = []
        self._network: List[str] = []
        self._started: Dict[Request, float] = {}
        self._refs: Dict[str, Locator] = {}
        self._closed = False

        page.on("console", self._on_console)
        page.on("pageerror", self._on_page_error)
        page.on("request", self._on_request)
        page.on("response", self._on_response)
        page.on("requestfailed", self._on_request_failed)

    # Event buffering

    def _on_console(self, message: ConsoleMessage) -> None:
        level = CONSOLE_LEVELS.get(message.type, "log")
        line = f"[{level}] {message.text}"
        location = message.location or {}
        if location.get("url"):
            line += (
                f" ({location['url']}:{location.get('lineNumber', 0)}"
                f":{location.get('columnNumber', 0)})"
            )
        self._console.append(line)

    def _on_page_error(self, error: PlaywrightError) -> None:
        stack = getattr(error, "stack", None)
        self._console.append(f"[error] {stack or error.message}")

    def _on_request(self, request: Request) -> None:
        if request.resource_type in TRACKED_RESOURCE_TYPES:
            self._started[request] = asyncio.get_running_loop().time()

    def _elapsed_ms(self, request: Request) -> Optional[float]:
        started = self._started.pop(request, None)
        if started is None:
            return None
        return (asyncio.get_running_loop().time() - started) * 1000

    def _on_response(self, response: Response) -> None:
        request = response.request
        if request.resource_type not in TRACKED_RESOURCE_TYPES:
            return
        duration = self._elapsed_ms(request)
        line = f"{request.method} {response.url} {response.status} {response.status_text}".rstrip()
        if duration is not None:
            line += f" {duration:.0f}ms"
        self._network.append(line)

    def _on_request_failed(self, request: Request) -> None:
        if request.resource_type not in TRACKED_RESOURCE_TYPES:
            return
        self._elapsed_ms(request)
        self._network.append(f"{request.method} {request.url} failed {request.failure or 'unknown error'}")

    @staticmethod
    def _read(buffer: List[str], limit: int, pattern: Optional[str], clear: bool) -> str:
        lines = list(buffer)
        if clear:
            buffer.clear()
        if pattern:
            regex = re.compile(pattern)
            lines = [line for line in lines if regex.search(line)]
        return "\n".join(lines[-limit:])

    async def read_console(self, limit: int, pattern: Optional[str] = None, clear: bool = False) -> str:
        return self._read(self._console, limit, pattern, clear)

    async def read_network(self, limit: int, url_pattern: Optional[str] = None, clear: bool = False) -> str:
        return self._read(self._network, limit, url_pattern, clear)

    # Page operations

    async def navigate(self, url: str) -> None:
        """Navigate to a URL."""
        self.logger.info("Navigating to URL", extra={"url": url})
        start_time = asyncio.get_running_loop().time()
        try:
            await self._page.goto(url, wait_until="load", timeout=self.settings.navigation_timeout_ms)
        except PlaywrightError as exc:
            raise DriverError(
                f"Navigation to {url} failed: {exc.message}", action="navigate", url=url, cause=exc
            ) from exc
        self._refs.clear()
        elapsed_ms = (asyncio.get_running_loop().time() - start_time) * 1000
        log_performance_metric("page_navigation", elapsed_ms, context={"url": url})

    def _candidates(self, descriptor: str) -> List[Locator]:
        page = self._page
        if CSS_SHAPED.match(descriptor):
            return [page.locator(descriptor)]

        candidates = [
            page.locator(f'[name="{descriptor}"]'),
            page.get_by_label(descriptor),
            page.get_by_placeholder(descriptor),
        ]
        words = descriptor.rsplit(" ", 1)
        if len(words) == 2 and words[1].lower() in ROLE_NOUNS:
            candidates.append(page.get_by_role(ROLE_NOUNS[words[1].lower()], name=words[0]))
        candidates.extend([
            page.get_by_role("button", name=descriptor),
            page.get_by_role("link", name=descriptor),
            page.get_by_test_id(descriptor),
            page.get_by_text(descriptor),
        ])
        return candidates

    async def find(self, descriptor: str) -> Optional[str]:
        """Resolve a descriptor to the first locator that matches anything."""
        try:
            for locator in self._candidates(descriptor):
                if await locator.count() > 0:
                    ref = f"e{len(self._refs) + 1}"
                    self._refs[ref] = locator.first
                    return ref
        except PlaywrightError as exc:
            raise DriverError(
                f"Could not resolve '{descriptor}': {exc.message}",
                action="find",
                descriptor=descriptor,
                cause=exc,
            ) from exc
        return None

    async def act(self, ref: Optional[str], kind: str, payload: Optional[str] = None) -> None:
        locator = None
        if ref is not None:
            locator = self._refs.get(ref)
            if locator is None:
                raise DriverError(f"Stale element reference {ref}", action=kind)

        timeout = self.settings.action_timeout_ms
        try:
            if kind == "click":
                await locator.click(timeout=timeout)
            elif kind == "type":
                await locator.fill(payload or "", timeout=timeout)
            elif kind == "hover":
                await locator.hover(timeout=timeout)
            elif kind == "upload":
                await locator.set_input_files(payload, timeout=self.settings.upload_timeout_ms)
            elif kind == "select":
                await locator.select_option(payload, timeout=timeout)
            elif kind == "clear":
                await locator.clear(timeout=timeout)
            elif kind == "key":
                if locator is not None:
                    await locator.press(payload, timeout=timeout)
                else:
                    await self._page.keyboard.press(payload)
            elif kind == "scroll":
                await self._scroll(locator, payload)
            else:
                raise DriverError(f"Unsupported interaction: {kind}", action=kind)
        except PlaywrightError as exc:
            raise DriverError(f"{kind} failed: {exc.message}", action=kind, cause=exc) from exc

    async def _scroll(self, locator: Optional[Locator], payload: Optional[str]) -> None:
        if locator is not None:
            await locator.scroll_into_view_if_needed(timeout=self.settings.action_timeout_ms)
            return
        direction = (payload or "down").strip().lower()
        if direction == "top":
            await self._page.evaluate("window.scrollTo(0, 0)")
        elif direction == "bottom":
            await self._page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
        elif direction == "up":
            await self._page.mouse.wheel(0, -self.settings.browser_viewport_height)
        elif direction.lstrip("-").isdigit():
            await self._page.mouse.wheel(0, int(direction))
        else:
            await self._page.mouse.wheel(0, self.settings.browser_viewport_height)

    async def snapshot(self) -> str:
        """ARIA snapshot of the page followed by test-id and id markers."""
        try:
            aria = await self._page.locator("body").aria_snapshot()
            markers = await self._page.evaluate(MARKER_SCRIPT)
        except PlaywrightError as exc:
            raise DriverError(f"Snapshot failed: {exc.message}", action="snapshot", cause=exc) from exc
        return f"{aria}\n{markers}" if markers else aria

    async def screenshot(self) -> bytes:
        try:
            return await self._page.screenshot(full_page=True)
        except PlaywrightError as exc:
            raise DriverError(f"Screenshot failed: {exc.message}", action="screenshot", cause=exc) from exc

    async def current_url(self) -> str:
        return self._page.url

    async def close(self) -> None:
        """Close the page and its browser context."""
        if self._closed:
            return
        self._closed = True
        await self._context.close()


class PlaywrightSessionFactory(BrowserSessionFactory):
    """Owns the Playwright browser and opens one context per session."""

    def __init__(self, settings: Optional[Settings] = None, headless: Optional[bool] = None) -> None:
        """
        Initialize the factory.

        Args:
            settings: Browser and timeout settings
            headless: Override for settings.browser_headless
        """
        self.settings = settings or get_settings()
        self.headless = headless if headless is not None else self.settings.browser_headless
        self.logger = get_logger("healrun.browser.driver")
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the browser."""
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()

            if self._browser is None:
                self.logger.info(
                    "Starting browser",
                    extra={
                        "headless": self.headless,
                        "viewport": f"{self.settings.browser_viewport_width}x{self.settings.browser_viewport_height}",
                    },
                )
                self._browser = await self._playwright.chromium.launch(
                    headless=self.headless,
                    args=["--no-sandbox", "--disable-dev-shm-usage", "--disable-extensions"],
                )

    async def stop(self) -> None:
        """Stop the browser and cleanup resources."""
        if self._browser:
            await self._browser.close()
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        self.logger.info("Browser stopped")

    async def open_session(self) -> PlaywrightSession:
        await self.start()
        context = await self._browser.new_context(
            viewport={
                "width": self.settings.browser_viewport_width,
                "height": self.settings.browser_viewport_height,
            },
        )
        context.set_default_timeout(self.settings.action_timeout_ms)
        page = await context.new_page()
        return PlaywrightSession(context, page, self.settings)

    async def __aenter__(self) -> "PlaywrightSessionFactory":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
