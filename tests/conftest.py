"""
Shared fixtures: a scripted in-memory browser driver and settings pointing
at temporary directories.
"""

import re
from typing import Callable, Dict, List, Optional, Set, Tuple
from unittest.mock import AsyncMock

import pytest

from healrun.config.settings import Settings
from healrun.core.interfaces import BrowserDriver, BrowserSessionFactory
from healrun.orchestration.context import TestContext

Effect = Callable[["FakeDriver", Optional[str]], None]


class FakeDriver(BrowserDriver):
    """
    Scripted driver.

    Every descriptor resolves unless listed in ``missing``. Side effects are
    registered per (kind, descriptor); for navigation the descriptor is the
    absolute URL. When several effects are registered they are consumed in
    order and the last one repeats.
    """

    def __init__(self, url: str = "about:blank", snapshot: str = "") -> None:
        self.url = url
        self.page_snapshot = snapshot
        self.console_lines: List[str] = []
        self.network_lines: List[str] = []
        self.missing: Set[str] = set()
        self.hooks: Dict[Tuple[str, str], List[Effect]] = {}
        self.actions: List[Tuple[str, Optional[str], Optional[str]]] = []
        self.navigations: List[str] = []
        self.refs: Dict[str, str] = {}
        self.closed = False
        self.factory: Optional["FakeSessionFactory"] = None

    # Scripting helpers

    def on(self, kind: str, descriptor: str, *effects: Effect) -> "FakeDriver":
        self.hooks[(kind, descriptor)] = list(effects)
        return self

    def emit_console(self, *lines: str) -> None:
        self.console_lines.extend(lines)

    def emit_network(self, *lines: str) -> None:
        self.network_lines.extend(lines)

    def _fire(self, kind: str, descriptor: str, payload: Optional[str]) -> None:
        effects = self.hooks.get((kind, descriptor))
        if not effects:
            return
        effect = effects.pop(0) if len(effects) > 1 else effects[0]
        effect(self, payload)

    # BrowserDriver

    async def navigate(self, url: str) -> None:
        self.navigations.append(url)
        self.url = url
        self._fire("navigate", url, None)

    async def find(self, descriptor: str) -> Optional[str]:
        if descriptor in self.missing:
            return None
        ref = f"e{len(self.refs) + 1}"
        self.refs[ref] = descriptor
        return ref

    async def act(self, ref: Optional[str], kind: str, payload: Optional[str] = None) -> None:
        descriptor = self.refs.get(ref) if ref is not None else None
        self.actions.append((kind, descriptor, payload))
        self._fire(kind, descriptor or "", payload)

    async def snapshot(self) -> str:
        return self.page_snapshot

    async def screenshot(self) -> bytes:
        return b"\x89PNG fake"

    @staticmethod
    def _read(buffer: List[str], limit: int, pattern: Optional[str], clear: bool) -> str:
        lines = list(buffer)
        if clear:
            buffer.clear()
        if pattern:
            lines = [line for line in lines if re.search(pattern, line)]
        return "\n".join(lines[-limit:])

    async def read_console(self, limit: int, pattern: Optional[str] = None, clear: bool = False) -> str:
        return self._read(self.console_lines, limit, pattern, clear)

    async def read_network(self, limit: int, url_pattern: Optional[str] = None, clear: bool = False) -> str:
        return self._read(self.network_lines, limit, url_pattern, clear)

    async def current_url(self) -> str:
        return self.url

    async def close(self) -> None:
        if not self.closed and self.factory is not None:
            self.factory.open_count -= 1
        self.closed = True


class FakeSessionFactory(BrowserSessionFactory):
    """Hands out FakeDrivers and tracks how many are open at once."""

    def __init__(self, build: Optional[Callable[[], FakeDriver]] = None) -> None:
        self.build = build or FakeDriver
        self.sessions: List[FakeDriver] = []
        self.open_count = 0
        self.max_open = 0

    async def open_session(self) -> FakeDriver:
        driver = self.build()
        driver.factory = self
        self.sessions.append(driver)
        self.open_count += 1
        self.max_open = max(self.max_open, self.open_count)
        return driver


def go_to(url: str) -> Effect:
    """Effect that moves the fake page to ``url``."""
    def effect(driver: FakeDriver, payload: Optional[str]) -> None:
        driver.url = url
    return effect


@pytest.fixture
def settings(tmp_path):
    """Settings for an app at http://app.test with fast polling."""
    return Settings(
        base_url="http://app.test",
        test_email="qa@example.com",
        test_password="s3cret-pass",
        poll_interval_ms=10,
        retry_backoff_ms=100,
        rate_limit_wait_ms=2000,
        screenshots_dir=tmp_path / "screenshots",
        reports_dir=tmp_path / "reports",
        test_materials_dir=tmp_path / "materials",
    )


@pytest.fixture
def driver():
    return FakeDriver(url="http://app.test/")


@pytest.fixture
def ctx(driver):
    """Context without a task owner, usable from any test."""
    return TestContext(
        driver=driver,
        base_url="http://app.test",
        scenario="unit scenario",
        store={"testEmail": "qa@example.com", "courseId": "abc123"},
    )


@pytest.fixture
def fake_sleep():
    return AsyncMock()
