"""Infer the project a Cursor session belongs to.

Cursor does not record a session's project directly. Tool results do: a
codebase search result lists ``success.workspaceResults`` keyed by workspace
root, and file tools report an absolute ``success.path``.
"""

import re
import urllib.parse
from typing import Any

from .core import WorkspaceInfo
from .parser import decode_json, workspace_from_result

NICKNAME_TOOLS = ("nickname_current_session", "mcp_cursor-context_nickname_current_session")

_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_PROJECT_ROOTS = ("play", "Documents", "projects", "dev", "src", "code", "repos", "workspace")


def is_absolute_path(path: Any) -> bool:
    return isinstance(path, str) and (path.startswith("/") or bool(_DRIVE_RE.match(path)))


def workspace_path_from_bubble(bubble: dict) -> str | None:
    """Return the workspace path reported by a bubble's tool result."""
    tool_data = bubble.get("toolFormerData")
    if not isinstance(tool_data, dict):
        return None

    raw = tool_data.get("result")
    if isinstance(raw, dict):
        result = raw
    else:
        decoded = decode_json(raw)
        if not decoded.ok or not isinstance(decoded.value, dict):
            return None
        result = decoded.value

    path = workspace_from_result(result)
    if path:
        return path

    success = result.get("success")
    if isinstance(success, dict) and is_absolute_path(success.get("path")):
        return success["path"]
    return None


def extract_all_workspace_paths(bubbles: list[dict]) -> list[str]:
    """Every distinct workspace path in the session, in first-seen order."""
    paths: dict[str, None] = {}
    for bubble in bubbles:
        path = workspace_path_from_bubble(bubble)
        if path:
            paths.setdefault(path, None)
    return list(paths)


def extract_workspace_path(bubbles: list[dict]) -> str | None:
    for bubble in bubbles:
        path = workspace_path_from_bubble(bubble)
        if path:
            return path
    return None


def project_name(workspace_path: str | None) -> str:
    """Final path segment: ``/Users/me/projects/my-app/`` -> ``my-app``."""
    if not workspace_path:
        return "unknown"
    cleaned = workspace_path.rstrip("/\\")
    if not cleaned:
        return "unknown"
    separator = "\\" if "\\" in cleaned else "/"
    return cleaned.split(separator)[-1] or "unknown"


def extract_nickname(bubbles: list[dict]) -> str | None:
    """Return the nickname passed to a ``nickname_current_session`` tool call."""
    for bubble in bubbles:
        tool_data = bubble.get("toolFormerData")
        if not isinstance(tool_data, dict) or tool_data.get("name") not in NICKNAME_TOOLS:
            continue

        params = tool_data.get("params")
        if isinstance(params, str):
            params = decode_json(params).value
        if not isinstance(params, dict):
            continue

        nickname = params.get("nickname")
        if isinstance(nickname, str) and nickname:
            return nickname

        # MCP wrapper format: params.tools[].parameters is itself JSON
        for tool in params.get("tools") or []:
            if not isinstance(tool, dict):
                continue
            nested = decode_json(tool.get("parameters")).value
            if isinstance(nested, dict) and isinstance(nested.get("nickname"), str):
                return nested["nickname"]
    return None


def get_workspace_info(bubbles: list[dict]) -> WorkspaceInfo:
    all_paths = extract_all_workspace_paths(bubbles)
    primary = all_paths[0] if all_paths else None
    return WorkspaceInfo(
        primary_path=primary,
        project_name=project_name(primary) if primary else None,
        all_paths=all_paths,
        has_project=bool(all_paths),
        is_multi_workspace=len(all_paths) > 1,
        nickname=extract_nickname(bubbles),
    )


# ── Session-record fallback ──────────────────────────────────────


def _path_from_uri(uri: Any) -> str | None:
    if isinstance(uri, dict):
        for key in ("fsPath", "path", "external"):
            path = _path_from_uri(uri.get(key))
            if path:
                return path
        return None
    if not isinstance(uri, str):
        return None
    if uri.startswith("file://"):
        return urllib.parse.unquote(uri[len("file://"):])
    return uri if is_absolute_path(uri) else None


def project_root_from_file(file_path: str) -> str | None:
    """Guess a project root: the directory just below a well-known parent.

    ``/Users/me/projects/my-app/src/main.py`` -> ``/Users/me/projects/my-app``
    """
    separator = "\\" if "\\" in file_path else "/"
    parts = file_path.split(separator)
    for i, part in enumerate(parts[:-2]):
        if part in _PROJECT_ROOTS and parts[i + 1]:
            return separator.join(parts[: i + 2])
    return None


def extract_workspace_from_session(session: dict) -> str | None:
    """Derive a project root from file references in the session record.

    Used when no tool result names a workspace.
    """
    candidates: list[str] = []

    def add(uri: Any) -> None:
        path = _path_from_uri(uri)
        if path:
            candidates.append(path)

    for uri in session.get("allAttachedFileCodeChunksUris") or []:
        add(uri)

    context = session.get("context")
    if isinstance(context, dict):
        selections = context.get("fileSelections")
        if isinstance(selections, list):
            for selection in selections:
                if isinstance(selection, dict):
                    add(selection.get("uri"))
        elif isinstance(selections, dict):
            for key in selections:
                add(key)
        mentions = context.get("mentions")
        if isinstance(mentions, dict) and isinstance(mentions.get("fileSelections"), dict):
            for key in mentions["fileSelections"]:
                add(key)

    for created in session.get("newlyCreatedFiles") or []:
        if isinstance(created, dict):
            add(created.get("uri"))

    for field in ("codeBlockData", "originalFileStates"):
        block = session.get(field)
        if isinstance(block, dict):
            for key in block:
                add(key)

    for candidate in candidates:
        root = project_root_from_file(candidate)
        if root:
            return root
    return None


def is_empty_session(session: dict | None) -> bool:
    """True when the session record lists no messages."""
    if not session:
        return True
    headers = session.get("fullConversationHeadersOnly") or session.get("conversation")
    return not headers
