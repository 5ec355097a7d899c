from __future__ import annotations

from abc import ABC, abstractmethod

MISSING_SESSION_MARKERS = ("can't find pane", "can't find session", "no server running")


class SessionHostError(RuntimeError):
    """Raised when a terminal-multiplexer command fails."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr

    @property
    def is_missing_session(self) -> bool:
        detail = self.stderr.lower()
        return any(marker in detail for marker in MISSING_SESSION_MARKERS)


class SessionHost(ABC):
    """Terminal panes that workers run in.

    A handle is whatever string the host uses to address a pane.
    """

    @abstractmethod
    async def split(self, percent: int = 50) -> str:
        """Create a new pane beside the current one and return its handle."""

    @abstractmethod
    async def focus(self, handle: str) -> None:
        """Make the pane the active one."""

    @abstractmethod
    async def send_literal(self, handle: str, text: str) -> None:
        """Type *text* into the pane without interpreting key names."""

    @abstractmethod
    async def send_key(self, handle: str, key: str) -> None:
        """Press a named key such as ``Enter``."""

    @abstractmethod
    async def capture(self, handle: str) -> str:
        """Return the pane's visible output including scrollback."""

    @abstractmethod
    async def close(self, handle: str) -> None:
        """Close the pane. Raises ``SessionHostError`` if it is already gone."""

    @abstractmethod
    async def exists(self, name: str) -> bool:
        """Whether a named session is alive."""

    @abstractmethod
    async def list_sessions(self, pattern: str | None = None) -> list[str]:
        """Names of live sessions, optionally filtered by a regular expression."""

    @abstractmethod
    def close_sync(self, handle: str) -> None:
        """Blocking close used from exit handlers where no event loop is running."""
