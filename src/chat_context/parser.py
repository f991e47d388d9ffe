"""Decode Cursor message records ("bubbles") into canonical messages.

User input is stored as a Lexical rich-text document serialized to JSON;
assistant output is plain text. Tool invocations carry their params and
result as JSON-encoded strings. Every field is optional: the format is
undocumented and changes between Cursor releases, so malformed input decodes
to empty values instead of raising.
"""

import enum
import json
from datetime import datetime, timezone
from typing import Any, NamedTuple

from .core import Message, ParseOptions, ToolInfo

USER_TYPE = 1
ASSISTANT_TYPE = 2


class NodeKind(enum.Enum):
    TEXT = "text"
    PARAGRAPH = "paragraph"
    CODE = "code"
    INLINE_CODE = "code-highlight"
    GENERIC = "generic"


class JsonResult(NamedTuple):
    ok: bool
    value: Any = None


def decode_json(raw: Any) -> JsonResult:
    """Decode a JSON string, reporting failure instead of raising."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        return JsonResult(False)
    try:
        return JsonResult(True, json.loads(raw))
    except ValueError:
        return JsonResult(False)


def role_for_type(bubble_type: Any) -> str:
    if bubble_type == USER_TYPE:
        return "user"
    if bubble_type == ASSISTANT_TYPE:
        return "assistant"
    return "tool"


# ── Rich text ────────────────────────────────────────────────────


def node_kind(node: dict) -> NodeKind:
    node_type = node.get("type")
    if node_type == "code":
        return NodeKind.CODE
    if node_type == "code-highlight":
        return NodeKind.INLINE_CODE
    if node_type == "paragraph":
        return NodeKind.PARAGRAPH
    if isinstance(node.get("text"), str):
        return NodeKind.TEXT
    return NodeKind.GENERIC


def _children(node: dict) -> list[dict]:
    children = node.get("children")
    if not isinstance(children, list):
        return []
    return [c for c in children if isinstance(c, dict)]


def _descendant_text(node: dict) -> str:
    """Concatenate the text of every descendant of ``node``, in order."""
    parts = []
    stack = list(reversed(_children(node)))
    while stack:
        current = stack.pop()
        text = current.get("text")
        if isinstance(text, str):
            parts.append(text)
        stack.extend(reversed(_children(current)))
    return "".join(parts)


def parse_rich_text(raw: Any) -> str:
    """Flatten a serialized Lexical document into plain text.

    Never raises: input that is not valid JSON or has no ``root`` yields "".
    The walk uses an explicit stack so deeply nested documents cannot exhaust
    the interpreter's recursion limit.
    """
    if isinstance(raw, dict):
        doc = raw
    else:
        decoded = decode_json(raw)
        if not decoded.ok:
            return ""
        doc = decoded.value
    if not isinstance(doc, dict) or not isinstance(doc.get("root"), dict):
        return ""

    parts: list[str] = []
    # Items are either nodes still to visit or literal strings to emit.
    stack: list[dict | str] = [doc["root"]]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            parts.append(item)
            continue

        kind = node_kind(item)
        if kind is NodeKind.TEXT:
            parts.append(item["text"])
        elif kind is NodeKind.CODE:
            language = item.get("language") or ""
            parts.append(f"\n```{language}\n{_descendant_text(item)}\n```\n")
        elif kind is NodeKind.INLINE_CODE:
            text = item.get("text")
            parts.append(f"`{text if isinstance(text, str) else ''}`")
        else:
            children = _children(item)
            if kind is NodeKind.PARAGRAPH and children:
                stack.append("\n")
            stack.extend(reversed(children))

    return "".join(parts)


# ── Tools ────────────────────────────────────────────────────────


def workspace_from_result(result: Any) -> str | None:
    """Return the first key of ``result.success.workspaceResults``, if any."""
    if not isinstance(result, dict):
        return None
    success = result.get("success")
    if not isinstance(success, dict):
        return None
    workspace_results = success.get("workspaceResults")
    if isinstance(workspace_results, dict):
        for path in workspace_results:
            return path
    return None


def parse_tool_data(tool_data: Any) -> ToolInfo | None:
    """Parse the ``toolFormerData`` block of a bubble.

    ``params`` and ``result`` are JSON strings; either one that fails to
    decode is left out rather than failing the message.
    """
    if not isinstance(tool_data, dict) or not tool_data:
        return None

    name = tool_data.get("name")
    if not name:
        tool_id = tool_data.get("tool")
        name = f"tool_{tool_id}" if tool_id is not None else "unknown_tool"
    info = ToolInfo(name=name)

    params = tool_data.get("params")
    if isinstance(params, (dict, list)):
        info.params = params
    elif params:
        decoded = decode_json(params)
        if decoded.ok:
            info.params = decoded.value

    result = tool_data.get("result")
    if result:
        decoded = decode_json(result) if isinstance(result, str) else JsonResult(True, result)
        if decoded.ok:
            info.result = decoded.value
            info.workspace_path = workspace_from_result(decoded.value)

    return info


# ── Bubbles ──────────────────────────────────────────────────────


def parse_bubble(bubble: dict, options: ParseOptions | None = None) -> Message:
    """Decode one bubble into a :class:`Message`."""
    options = options or ParseOptions()
    bubble_type = bubble.get("type")

    content = ""
    if bubble_type == USER_TYPE:
        rich_text = bubble.get("richText")
        if rich_text:
            content = parse_rich_text(rich_text)
        if not content:
            content = _as_text(bubble.get("text"))
    elif bubble_type == ASSISTANT_TYPE:
        content = _as_text(bubble.get("text"))

    tool_info = None
    if not options.exclude_tools:
        tool_info = parse_tool_data(bubble.get("toolFormerData"))

    return Message(
        role=role_for_type(bubble_type),
        content=content.strip(),
        bubble_id=str(bubble.get("bubbleId") or ""),
        timestamp=to_datetime(bubble.get("createdAt")),
        tool_info=tool_info,
    )


def parse_bubbles(bubbles: list[dict], options: ParseOptions | None = None) -> list[Message]:
    """Decode bubbles in order, applying the optional content-length cap.

    Truncated content gets a "..." suffix, so it may run three characters
    past ``max_content_length``.
    """
    options = options or ParseOptions()
    messages = [parse_bubble(b, options) for b in bubbles if isinstance(b, dict)]
    return apply_content_cap(messages, options.max_content_length)


def apply_content_cap(messages: list[Message], max_length: int | None) -> list[Message]:
    if not max_length:
        return messages
    for msg in messages:
        if len(msg.content) > max_length:
            msg.content = msg.content[:max_length] + "..."
    return messages


def filter_messages_by_role(messages: list[Message], roles: list[str]) -> list[Message]:
    return [m for m in messages if m.role in roles]


def conversation_only(messages: list[Message]) -> list[Message]:
    """Drop tool messages, keeping the user/assistant exchange."""
    return filter_messages_by_role(messages, ["user", "assistant"])


def estimate_tokens(content: str) -> int:
    """Rough token estimate at ~4 characters per token."""
    return -(-len(content) // 4)


def to_datetime(value: Any) -> datetime | None:
    """Convert epoch milliseconds or an ISO 8601 string to a datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (ValueError, OSError, OverflowError):
            return None
    if isinstance(value, str) and value:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_epoch_ms(value: Any) -> int | None:
    parsed = to_datetime(value)
    if parsed is None:
        return None
    return int(parsed.timestamp() * 1000)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""
