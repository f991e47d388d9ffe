"""Abstract base class for chat session sources."""

from abc import ABC, abstractmethod
from typing import Any

from .core import Message, ParseOptions, WorkspaceInfo


class SessionSource(ABC):
    """Base class for read-only session backends.

    Each backend (Cursor, Claude Code) implements this interface so the
    orchestrator can sync and decode sessions without knowing the physical
    format. Session ids passed in and out are the backend's raw ids; the
    orchestrator adds the ``<name>:`` prefix used by the metadata index.
    """

    name: str  # "cursor", "claude"

    @abstractmethod
    def is_available(self) -> bool:
        """Return True if this backend's data exists on this machine."""
        ...

    @abstractmethod
    def list_ids(self, limit: int | None = None) -> list[str]:
        """Return session ids, most recent first where the store allows."""
        ...

    @abstractmethod
    def get_session(self, session_id: str) -> dict | None:
        """Return the raw session record, or None when it does not exist."""
        ...

    @abstractmethod
    def get_raw_messages(self, session_id: str) -> list[dict]:
        """Return the session's raw message records in stored order."""
        ...

    @abstractmethod
    def parse_messages(
        self, raw_messages: list[dict], options: ParseOptions | None = None
    ) -> list[Message]:
        """Decode raw message records into canonical messages."""
        ...

    @abstractmethod
    def workspace_info(self, session: dict, raw_messages: list[dict]) -> WorkspaceInfo:
        """Derive the project facts for a session."""
        ...

    @abstractmethod
    def created_at(self, session: dict, raw_messages: list[dict]) -> int | None:
        """Return the session creation time in epoch milliseconds."""
        ...

    def is_empty(self, session: dict, raw_messages: list[dict]) -> bool:
        return not raw_messages

    def close(self) -> None:
        pass

    def __enter__(self) -> "SessionSource":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
