"""Core data models for chat-context."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class ToolInfo:
    """A tool invocation embedded in a message."""

    name: str
    params: Any = None
    result: Any = None
    workspace_path: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Message:
    """A single decoded message within a session."""

    role: str  # "user" | "assistant" | "tool"
    content: str
    bubble_id: str = ""
    timestamp: Optional[datetime] = None
    tool_info: Optional[ToolInfo] = None

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "bubble_id": self.bubble_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "tool_info": self.tool_info.to_dict() if self.tool_info else None,
        }


@dataclass
class ParseOptions:
    max_content_length: Optional[int] = None
    exclude_tools: bool = False


@dataclass
class WorkspaceInfo:
    """Project facts derived from a session's messages."""

    primary_path: Optional[str] = None
    project_name: Optional[str] = None
    all_paths: list[str] = field(default_factory=list)
    has_project: bool = False
    is_multi_workspace: bool = False
    nickname: Optional[str] = None  # from a nickname_current_session tool call


@dataclass
class SessionMetadata:
    """A row of the metadata index."""

    session_id: str  # source-qualified: "cursor:<uuid>" | "claude:<uuid>"
    source: str
    nickname: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    project_path: Optional[str] = None
    project_name: Optional[str] = None
    has_project: bool = False
    created_at: Optional[int] = None  # epoch milliseconds
    first_message_preview: Optional[str] = None
    message_count: Optional[int] = None
    last_synced_at: Optional[int] = None  # epoch milliseconds

    @property
    def raw_id(self) -> str:
        return self.session_id.split(":", 1)[-1]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tags"] = list(self.tags)
        return data


@dataclass
class SessionDetail:
    metadata: SessionMetadata
    messages: list[Message] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "metadata": self.metadata.to_dict(),
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class ProjectSummary:
    path: str
    name: str
    session_count: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TagSummary:
    tag: str
    count: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class IndexStats:
    """Row counts of the metadata index."""

    total_sessions: int = 0
    sessions_with_nicknames: int = 0
    sessions_with_tags: int = 0
    sessions_with_projects: int = 0
    total_projects: int = 0
    total_tags: int = 0


@dataclass
class ContextStats:
    """Index counts merged with a sampled count of source sessions."""

    total_sessions_in_sources: int
    total_sessions_with_metadata: int
    sessions_with_nicknames: int
    sessions_with_tags: int
    sessions_with_projects: int
    total_tags: int
    total_projects: int
    sessions_by_source: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)
