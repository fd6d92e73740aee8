"""
Core interfaces and abstract base classes for healrun.
"""

from abc import ABC, abstractmethod
from typing import Optional


ACT_KINDS = ("click", "type", "hover", "scroll", "key", "upload", "select", "clear")


class BrowserDriver(ABC):
    """
    One browser session (tab) driven by the orchestrator.

    Implementations raise DriverError when an operation does not achieve
    its effect. Any other exception is treated as a contract violation.
    """

    @abstractmethod
    async def navigate(self, url: str) -> None:
        """Navigate to an absolute URL and wait for the page to settle."""
        pass

    @abstractmethod
    async def find(self, descriptor: str) -> Optional[str]:
        """
        Resolve an element descriptor.

        Args:
            descriptor: Selector or human-readable element description

        Returns:
            Opaque element reference, or None if nothing matches
        """
        pass

    @abstractmethod
    async def act(self, ref: Optional[str], kind: str, payload: Optional[str] = None) -> None:
        """
        Perform an interaction.

        Args:
            ref: Element reference from find(), or None for page-level actions
            kind: One of ACT_KINDS
            payload: Text, key, file path or option value
        """
        pass

    @abstractmethod
    async def snapshot(self) -> str:
        """Return a structural text snapshot of the page."""
        pass

    @abstractmethod
    async def screenshot(self) -> bytes:
        """Capture a PNG screenshot of the page."""
        pass

    @abstractmethod
    async def read_console(
        self, limit: int, pattern: Optional[str] = None, clear: bool = False
    ) -> str:
        """Return up to ``limit`` raw console lines, optionally filtered and drained."""
        pass

    @abstractmethod
    async def read_network(
        self, limit: int, url_pattern: Optional[str] = None, clear: bool = False
    ) -> str:
        """Return up to ``limit`` raw network lines, optionally filtered and drained."""
        pass

    @abstractmethod
    async def current_url(self) -> str:
        """Return the URL of the page."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the session."""
        pass


class BrowserSessionFactory(ABC):
    """Creates isolated browser sessions, one per scenario."""

    @abstractmethod
    async def open_session(self) -> BrowserDriver:
        """Open a new, isolated session."""
        pass
