"""Shared test fixtures for chat-context."""

import json
import sqlite3
from datetime import datetime, timezone

import pytest

from chat_context.api import ChatContext
from chat_context.backends.claude_code import ClaudeCodeSource
from chat_context.backends.cursor import AggregatedCursorStore, CursorSource
from chat_context.index import MetadataIndex


def epoch_ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


def lexical(*paragraphs: str) -> str:
    """Serialize a Lexical document with one paragraph per argument."""
    return json.dumps({
        "root": {
            "type": "root",
            "children": [
                {"type": "paragraph", "children": [{"type": "text", "text": p}]}
                for p in paragraphs
            ],
        }
    })


def make_store(db_path, item_rows=(), kv_rows=()):
    """Create a state.vscdb with Cursor's two key-value tables."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.execute("CREATE TABLE cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.executemany("INSERT INTO ItemTable VALUES (?, ?)", list(item_rows))
    conn.executemany("INSERT INTO cursorDiskKV VALUES (?, ?)", list(kv_rows))
    conn.commit()
    conn.close()
    return db_path


T1 = epoch_ms(2025, 1, 15, 10, 0, 0)
T2 = epoch_ms(2025, 1, 16, 9, 0, 0)


@pytest.fixture
def cursor_user_dir(tmp_path):
    """Create a synthetic Cursor ``User`` directory.

    globalStorage (legacy layout):
    - comp-001: 4 stored bubbles plus one header whose body is missing; a
      codebase search names its workspace; it nicknames itself "auth-fix"
    - comp-002: 2 bubbles; project only recoverable from attached files
    - comp-empty: no headers

    workspaceStorage/abc123hash (new layout): summaries for comp-002 and
    comp-003 (comp-003 has no messages anywhere).
    """
    user_dir = tmp_path / "Cursor" / "User"

    comp_001 = {
        "composerId": "comp-001",
        "createdAt": T1,
        "fullConversationHeadersOnly": [
            {"bubbleId": "b1", "type": 1},
            {"bubbleId": "b2", "type": 2},
            {"bubbleId": "b3", "type": 2},
            {"bubbleId": "b-missing", "type": 1},
            {"bubbleId": "b4", "type": 2},
        ],
    }
    search_result = {"success": {"workspaceResults": {"/Users/testuser/dev/my-project": {"results": []}}}}
    bubbles_001 = {
        "b1": {"type": 1, "richText": lexical("Fix the login bug"), "text": "Fix the login bug", "createdAt": T1},
        "b2": {"type": 2, "text": "Looking at auth.ts now.", "createdAt": T1 + 5000},
        "b3": {
            "type": 2,
            "text": "",
            "toolFormerData": {
                "name": "codebase_search",
                "params": json.dumps({"query": "login"}),
                "result": json.dumps(search_result),
            },
        },
        "b4": {
            "type": 2,
            "text": "",
            "toolFormerData": {
                "name": "nickname_current_session",
                "params": json.dumps({"nickname": "auth-fix"}),
                "result": json.dumps({"ok": True}),
            },
        },
    }

    comp_002 = {
        "composerId": "comp-002",
        "createdAt": T2,
        "allAttachedFileCodeChunksUris": ["file:///Users/testuser/dev/webapp/src/theme.ts"],
        "conversation": [
            {"bubbleId": "c1", "type": 1},
            {"bubbleId": "c2", "type": 2},
        ],
    }
    bubbles_002 = {
        "c1": {"type": 1, "richText": "", "text": "Add dark mode to the webapp", "createdAt": T2},
        "c2": {"type": 2, "text": "Added a CSS variable theme.", "createdAt": T2 + 1000},
    }

    kv_rows = [
        ("composerData:comp-001", json.dumps(comp_001)),
        ("composerData:comp-002", json.dumps(comp_002)),
        ("composerData:comp-empty", json.dumps({"composerId": "comp-empty", "createdAt": T1})),
    ]
    kv_rows += [(f"bubbleId:comp-001:{k}", json.dumps(v)) for k, v in bubbles_001.items()]
    kv_rows += [(f"bubbleId:comp-002:{k}", json.dumps(v)) for k, v in bubbles_002.items()]
    make_store(user_dir / "globalStorage" / "state.vscdb", kv_rows=kv_rows)

    composer_index = {
        "allComposers": [
            {"composerId": "comp-002", "name": "Add dark mode", "createdAt": T2},
            {"composerId": "comp-003", "name": "Summary only", "createdAt": T2 + 60000},
        ],
        "selectedComposerIds": ["comp-002"],
    }
    make_store(
        user_dir / "workspaceStorage" / "abc123hash" / "state.vscdb",
        item_rows=[("composer.composerData", json.dumps(composer_index))],
    )
    return user_dir


@pytest.fixture
def store_factory():
    """Return a builder for ad-hoc state.vscdb files."""
    return make_store


@pytest.fixture
def cursor_db_paths(cursor_user_dir):
    return [
        cursor_user_dir / "globalStorage" / "state.vscdb",
        cursor_user_dir / "workspaceStorage" / "abc123hash" / "state.vscdb",
    ]


@pytest.fixture
def claude_dir(tmp_path):
    """Create a synthetic Claude Code projects directory.

    Includes a user prompt, an assistant entry with text and a tool_use, a
    tool_result entry (skipped), a plain assistant reply, a snapshot entry
    (skipped), a malformed line and an ``agent-*`` file (ignored).
    """
    projects = tmp_path / "claude" / "projects"
    project_dir = projects / "-Users-testuser-dev-myapp"
    project_dir.mkdir(parents=True)
    cwd = "/Users/testuser/dev/myapp"

    entries = [
        {"type": "file-history-snapshot", "messageId": "snap-1", "snapshot": {}},
        {
            "type": "user", "uuid": "u1", "sessionId": "sess-abc", "cwd": cwd,
            "timestamp": "2025-01-20T10:00:00.000Z",
            "message": {"role": "user", "content": "Refactor the payment module"},
        },
        {
            "type": "assistant", "uuid": "a1", "sessionId": "sess-abc", "cwd": cwd,
            "timestamp": "2025-01-20T10:00:05.000Z",
            "message": {"role": "assistant", "content": [
                {"type": "text", "text": "I'll start by reading it."},
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": f"{cwd}/pay.py"}},
            ]},
        },
        {
            "type": "user", "uuid": "u2", "sessionId": "sess-abc", "cwd": cwd,
            "timestamp": "2025-01-20T10:00:06.000Z",
            "message": {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "def pay(): ..."},
            ]},
        },
        {
            "type": "assistant", "uuid": "a2", "sessionId": "sess-abc", "cwd": cwd,
            "timestamp": "2025-01-20T10:01:00.000Z",
            "message": {"role": "assistant", "content": [{"type": "text", "text": "Done."}]},
        },
    ]
    lines = [json.dumps(e) for e in entries]
    lines.insert(2, "{not json")
    (project_dir / "sess-abc.jsonl").write_text("\n".join(lines) + "\n", encoding="utf-8")
    (project_dir / "agent-xyz.jsonl").write_text(json.dumps(entries[1]) + "\n", encoding="utf-8")
    return projects


@pytest.fixture
def index(tmp_path):
    idx = MetadataIndex(tmp_path / "context" / "metadata.db")
    yield idx
    idx.close()


@pytest.fixture
def sources(cursor_db_paths, claude_dir):
    return {
        "cursor": CursorSource(AggregatedCursorStore(cursor_db_paths)),
        "claude": ClaudeCodeSource(claude_dir),
    }


@pytest.fixture
def context(sources, index):
    ctx = ChatContext(sources, index)
    yield ctx
    ctx.close()
