"""
Scenario-scoped execution context.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from healrun.core.interfaces import BrowserDriver, BrowserSessionFactory
from healrun.core.types import CreatedResource
from healrun.error_handling.exceptions import OrchestrationError
from healrun.monitoring.logger import get_logger

logger = get_logger(__name__)


@dataclass
class TestContext:
    """
    Browser session and state owned by exactly one running scenario.

    The context is bound to the task that acquired it; use from any other
    task raises OrchestrationError.
    """

    __test__ = False

    driver: BrowserDriver
    base_url: str
    scenario: str = ""
    session_id: str = field(default_factory=lambda: str(uuid4()))
    store: Dict[str, Any] = field(default_factory=dict)
    resources: List[CreatedResource] = field(default_factory=list)
    last_snapshot: Optional[str] = None
    owner: Optional[asyncio.Task] = None
    closed: bool = False

    def assert_owned(self) -> None:
        """Raise unless called from the owning task of an open context."""
        if self.closed:
            raise OrchestrationError(
                "Test context already released",
                details={"session_id": self.session_id, "scenario": self.scenario},
            )
        current = asyncio.current_task()
        if self.owner is not None and current is not self.owner:
            raise OrchestrationError(
                "Test context used outside its owning scenario",
                details={"session_id": self.session_id, "scenario": self.scenario},
            )

    def register_resource(self, resource: CreatedResource) -> None:
        self.resources.append(resource)
        if resource.store_key:
            self.store[resource.store_key] = resource.id

    def resolve_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@asynccontextmanager
async def acquire_context(
    factory: BrowserSessionFactory,
    base_url: str,
    scenario: str = "",
    store: Optional[Dict[str, Any]] = None,
    close_timeout_ms: int = 10000,
) -> AsyncIterator[TestContext]:
    """
    Open a session for one scenario and close it on every exit path.

    Args:
        factory: Session factory
        base_url: Base URL of the application under test
        scenario: Scenario name, for logging
        store: Initial key/value store (copied)
        close_timeout_ms: Deadline for closing the session

    Yields:
        TestContext owned by the current task
    """
    driver = await factory.open_session()
    ctx = TestContext(
        driver=driver,
        base_url=base_url,
        scenario=scenario,
        store=dict(store or {}),
        owner=asyncio.current_task(),
    )
    logger.debug(
        "Acquired test context",
        extra={"scenario": scenario, "session_id": ctx.session_id},
    )
    try:
        yield ctx
    finally:
        ctx.closed = True
        try:
            await asyncio.wait_for(driver.close(), close_timeout_ms / 1000)
        except Exception:
            logger.exception(
                "Failed to close browser session",
                extra={"scenario": scenario, "session_id": ctx.session_id},
            )
        logger.debug(
            "Released test context",
            extra={"scenario": scenario, "session_id": ctx.session_id},
        )
