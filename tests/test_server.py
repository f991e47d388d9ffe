"""Tests for the FastAPI server."""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

import chat_context.server as srv
from chat_context.errors import DBLockedError
from chat_context.server import app


@pytest.fixture(autouse=True)
def server_context(context):
    """Point the server at the test context."""
    context.sync_sessions()
    srv._context = context
    yield context
    srv._context = None


def client():
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health():
    async with client() as c:
        resp = await c.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_get_sources():
    async with client() as c:
        resp = await c.get("/api/sources")
        assert resp.json() == ["cursor", "claude"]


@pytest.mark.asyncio
async def test_get_sessions():
    async with client() as c:
        resp = await c.get("/api/sessions")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 3
        assert [s["session_id"] for s in data["sessions"]] == [
            "claude:sess-abc", "cursor:comp-002", "cursor:comp-001",
        ]
        for session in data["sessions"]:
            assert "nickname" in session
            assert "tags" in session
            assert "project_name" in session


@pytest.mark.asyncio
async def test_get_sessions_filters():
    async with client() as c:
        resp = await c.get("/api/sessions", params={"source": "cursor", "sort": "most_messages", "limit": 1})
        assert [s["session_id"] for s in resp.json()["sessions"]] == ["cursor:comp-001"]


@pytest.mark.asyncio
async def test_get_sessions_bad_sort():
    async with client() as c:
        resp = await c.get("/api/sessions", params={"sort": "alphabetical"})
        assert resp.status_code == 400


@pytest.mark.asyncio
async def test_search():
    async with client() as c:
        resp = await c.get("/api/sessions/search", params={"q": "LOGIN"})
        assert resp.status_code == 200
        assert [s["session_id"] for s in resp.json()["sessions"]] == ["cursor:comp-001"]

        resp = await c.get("/api/sessions/search", params={"q": "LOGIN", "case_sensitive": "true"})
        assert resp.json()["total"] == 0


@pytest.mark.asyncio
async def test_get_session():
    async with client() as c:
        resp = await c.get("/api/session/auth-fix")
        assert resp.status_code == 200
        data = resp.json()
        assert data["metadata"]["session_id"] == "cursor:comp-001"
        assert len(data["messages"]) == 4
        assert data["messages"][0]["role"] == "user"
        assert data["messages"][2]["tool_info"]["name"] == "codebase_search"


@pytest.mark.asyncio
async def test_get_session_options():
    async with client() as c:
        resp = await c.get("/api/session/cursor:comp-001", params={"messages": "false"})
        assert resp.json()["messages"] == []

        resp = await c.get("/api/session/sess-abc", params={"max_content_length": 4, "exclude_tools": "true"})
        messages = resp.json()["messages"]
        assert messages[0]["content"] == "Refa..."
        assert all(m["tool_info"] is None for m in messages)


@pytest.mark.asyncio
async def test_get_session_not_found():
    async with client() as c:
        resp = await c.get("/api/session/nonexistent")
        assert resp.status_code == 404


@pytest.mark.asyncio
async def test_get_session_ambiguous():
    async with client() as c:
        resp = await c.get("/api/session/comp-00")
        assert resp.status_code == 409


@pytest.mark.asyncio
async def test_set_nickname():
    async with client() as c:
        resp = await c.put("/api/session/comp-002/nickname", json={"nickname": "dark-mode"})
        assert resp.status_code == 200
        assert resp.json()["nickname"] == "dark-mode"

        resp = await c.put("/api/session/sess-abc/nickname", json={"nickname": "dark-mode"})
        assert resp.status_code == 409


@pytest.mark.asyncio
async def test_tags():
    async with client() as c:
        resp = await c.post("/api/session/comp-002/tags/ui")
        assert resp.status_code == 200
        assert resp.json()["tags"] == ["ui"]

        resp = await c.get("/api/tags")
        assert resp.json() == [{"tag": "ui", "count": 1}]

        resp = await c.delete("/api/session/comp-002/tags/ui")
        assert resp.status_code == 200
        assert (await c.get("/api/tags")).json() == []


@pytest.mark.asyncio
async def test_projects_and_stats():
    async with client() as c:
        projects = (await c.get("/api/projects")).json()
        assert {p["name"] for p in projects} == {"my-project", "webapp", "myapp"}

        stats = (await c.get("/api/stats")).json()
        assert stats["total_sessions_with_metadata"] == 3
        assert stats["sessions_by_source"] == {"cursor": 4, "claude": 1}


@pytest.mark.asyncio
async def test_sync():
    async with client() as c:
        resp = await c.post("/api/sync")
        assert resp.status_code == 200
        assert resp.json() == {"synced": 0}


@pytest.mark.asyncio
async def test_locked_store_maps_to_503(server_context):
    with patch.object(server_context, "get_session", side_effect=DBLockedError()):
        async with client() as c:
            resp = await c.get("/api/session/auth-fix")
            assert resp.status_code == 503
