"""Claude Code chat history backend.

Reads chat data from the ~/.claude/projects/ directory structure. Each
project directory holds one ``<session-id>.jsonl`` file per session.

JSONL entry types:
- "user" or "human": User messages. Content can be a string or array of blocks.
  tool_result blocks are not part of the canonical conversation and are skipped.
- "assistant": AI responses. Content is an array of text and/or tool_use blocks.
  An entry with a tool_use block becomes a single "tool" message.
- "file-history-snapshot", "progress", "system", "summary": Skipped.
"""

import json
import logging
from pathlib import Path

from ..config import get_claude_code_path
from ..core import Message, ParseOptions, ToolInfo, WorkspaceInfo
from ..errors import SessionNotFoundError
from ..parser import apply_content_cap, to_datetime, to_epoch_ms
from ..provider import SessionSource
from ..workspace import project_name

logger = logging.getLogger(__name__)

NICKNAME_TOOLS = ("nickname_current_session", "mcp__cursor-context__nickname_current_session")


class ClaudeCodeSource(SessionSource):
    """Session source for Claude Code JSONL transcripts."""

    name = "claude"

    def __init__(self, base_path: Path | None = None):
        self._base_path = base_path

    def get_base_path(self) -> Path:
        return self._base_path or get_claude_code_path()

    def is_available(self) -> bool:
        return self.get_base_path().is_dir()

    def list_ids(self, limit: int | None = None) -> list[str]:
        """Session ids, most recently modified file first."""
        files = sorted(self._session_files(), key=_mtime, reverse=True)
        ids: dict[str, None] = {}
        for path in files:
            ids.setdefault(path.stem, None)
        result = list(ids)
        return result[:limit] if limit else result

    def get_session(self, session_id: str) -> dict | None:
        path = self._find_session_file(session_id)
        if path is None:
            return None

        summary = {"sessionId": session_id, "cwd": None, "timestamp": None, "path": str(path)}
        for entry in self._read_entries(path):
            if summary["cwd"] is None and entry.get("cwd"):
                summary["cwd"] = entry["cwd"]
            if summary["timestamp"] is None and entry.get("timestamp"):
                summary["timestamp"] = entry["timestamp"]
            if summary["cwd"] is not None and summary["timestamp"] is not None:
                break
        return summary

    def get_raw_messages(self, session_id: str) -> list[dict]:
        path = self._find_session_file(session_id)
        if path is None:
            raise SessionNotFoundError(session_id)
        return list(self._read_entries(path))

    def parse_messages(
        self, raw_messages: list[dict], options: ParseOptions | None = None
    ) -> list[Message]:
        options = options or ParseOptions()
        messages = []
        for entry in raw_messages:
            msg = self._entry_to_message(entry)
            if msg is None:
                continue
            if options.exclude_tools:
                msg.tool_info = None
            messages.append(msg)
        return apply_content_cap(messages, options.max_content_length)

    def workspace_info(self, session: dict, raw_messages: list[dict]) -> WorkspaceInfo:
        paths: dict[str, None] = {}
        for entry in raw_messages:
            cwd = entry.get("cwd")
            if isinstance(cwd, str) and cwd:
                paths.setdefault(cwd, None)
        all_paths = list(paths)
        primary = all_paths[0] if all_paths else None
        return WorkspaceInfo(
            primary_path=primary,
            project_name=project_name(primary) if primary else None,
            all_paths=all_paths,
            has_project=bool(all_paths),
            is_multi_workspace=len(all_paths) > 1,
            nickname=_extract_nickname(raw_messages),
        )

    def created_at(self, session: dict, raw_messages: list[dict]) -> int | None:
        for entry in raw_messages:
            ms = to_epoch_ms(entry.get("timestamp"))
            if ms is not None:
                return ms
        return to_epoch_ms(session.get("timestamp"))

    # ── Private helpers ──────────────────────────────────────────────

    def _session_files(self) -> list[Path]:
        base = self.get_base_path()
        if not base.is_dir():
            return []
        return [
            f for f in base.glob("*/*.jsonl")
            if f.is_file() and not f.name.startswith("agent-")
        ]

    def _find_session_file(self, session_id: str) -> Path | None:
        base = self.get_base_path()
        if not base.is_dir() or "/" in session_id or "\\" in session_id:
            return None
        for project_dir in base.iterdir():
            candidate = project_dir / f"{session_id}.jsonl"
            if project_dir.is_dir() and candidate.is_file():
                return candidate
        return None

    def _read_entries(self, path: Path):
        """Yield the JSON objects of a JSONL file, skipping bad lines."""
        try:
            with path.open(encoding="utf-8") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.debug("Bad JSON at %s:%d: %s", path, line_num, e)
                        continue
                    if isinstance(entry, dict):
                        yield entry
        except OSError as e:
            logger.warning("Failed to read JSONL %s: %s", path, e)

    def _entry_to_message(self, entry: dict) -> Message | None:
        entry_type = entry.get("type", "")
        msg_data = entry.get("message")
        if not isinstance(msg_data, dict):
            return None
        content = msg_data.get("content", "")
        timestamp = to_datetime(entry.get("timestamp"))
        bubble_id = str(entry.get("uuid") or "")

        if entry_type in ("human", "user"):
            text = _join_text(content)
            if not text.strip():
                return None
            return Message(role="user", content=text, bubble_id=bubble_id, timestamp=timestamp)

        if entry_type != "assistant":
            return None

        tool_info = None
        if isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name"):
                    tool_info = ToolInfo(name=block["name"], params=block.get("input") or {})
        return Message(
            role="tool" if tool_info else "assistant",
            content=_join_text(content).strip(),
            bubble_id=bubble_id,
            timestamp=timestamp,
            tool_info=tool_info,
        )


def _join_text(content) -> str:
    """Join the text blocks of a message content field."""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
            parts.append(block["text"])
        elif isinstance(block, str):
            parts.append(block)
    return "\n".join(parts)


def _extract_nickname(entries: list[dict]) -> str | None:
    for entry in entries:
        if entry.get("type") != "assistant":
            continue
        content = (entry.get("message") or {}).get("content")
        if not isinstance(content, list):
            continue
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            if block.get("name") not in NICKNAME_TOOLS:
                continue
            tool_input = block.get("input")
            if isinstance(tool_input, dict) and isinstance(tool_input.get("nickname"), str):
                return tool_input["nickname"]
    return None


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0
