"""FastAPI web server for chat-context."""

import logging

from fastapi import Body, FastAPI, HTTPException, Query

from .api import ChatContext
from .core import ParseOptions
from .errors import (
    AmbiguousSessionError,
    ChatContextError,
    DBLockedError,
    NicknameInUseError,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="chat-context", version="0.1.0")

# Context cache (created on first request)
_context: ChatContext | None = None


def _get_context() -> ChatContext:
    """Lazily create and cache the shared context."""
    global _context
    if _context is None:
        _context = ChatContext.from_settings()
        logger.info("Detected sources: %s", list(_context.sources))
    return _context


def _http_error(error: Exception) -> HTTPException:
    if isinstance(error, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (NicknameInUseError, AmbiguousSessionError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, DBLockedError):
        return HTTPException(status_code=503, detail=str(error))
    if isinstance(error, ValueError):
        return HTTPException(status_code=400, detail=str(error))
    logger.error("Request failed: %s", error)
    return HTTPException(status_code=500, detail=str(error))


# ── Routes ───────────────────────────────────────────────────────


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/sources")
async def get_sources():
    """Return the names of the configured session sources."""
    return list(_get_context().sources)


@app.get("/api/sessions")
async def get_sessions(
    project: str | None = Query(None, description="Filter by project path"),
    tag: str | None = Query(None, description="Filter by tag"),
    tagged_only: bool = Query(False, description="Only sessions with a nickname or tag"),
    sort: str = Query("newest", description="Sort: newest, oldest, most_messages"),
    source: str = Query("all", description="cursor, claude or all"),
    limit: int = Query(100, ge=1, le=1000),
    sync: bool = Query(False, description="Sync before listing"),
):
    """Return indexed sessions."""
    try:
        sessions = _get_context().list_sessions(
            project_path=project,
            tag=tag,
            tagged_only=tagged_only,
            sort_by=sort,
            limit=limit,
            source=source,
            sync_first=sync,
        )
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return {
        "total": len(sessions),
        "sessions": [s.to_dict() for s in sessions],
    }


@app.get("/api/sessions/search")
async def search_sessions(
    q: str = Query(..., min_length=1, description="Substring to look for"),
    project: str | None = Query(None),
    tagged_only: bool = Query(False),
    case_sensitive: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000),
):
    try:
        sessions = _get_context().search_sessions(
            q,
            project_path=project,
            tagged_only=tagged_only,
            limit=limit,
            case_sensitive=case_sensitive,
        )
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return {
        "total": len(sessions),
        "sessions": [s.to_dict() for s in sessions],
    }


@app.get("/api/session/{session_id}")
async def get_session(
    session_id: str,
    messages: bool = Query(True, description="Include decoded messages"),
    max_content_length: int | None = Query(None, ge=1),
    exclude_tools: bool = Query(False),
):
    """Return a session by id, id prefix or nickname."""
    options = ParseOptions(max_content_length=max_content_length, exclude_tools=exclude_tools)
    try:
        detail = _get_context().get_session(
            session_id, parse_options=options, include_messages=messages
        )
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return detail.to_dict()


@app.put("/api/session/{session_id}/nickname")
async def set_nickname(session_id: str, nickname: str = Body(..., embed=True, min_length=1)):
    try:
        metadata = _get_context().set_nickname(session_id, nickname)
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return metadata.to_dict()


@app.post("/api/session/{session_id}/tags/{tag}")
async def add_tag(session_id: str, tag: str):
    try:
        metadata = _get_context().add_tag(session_id, tag)
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return metadata.to_dict()


@app.delete("/api/session/{session_id}/tags/{tag}")
async def remove_tag(session_id: str, tag: str):
    try:
        _get_context().remove_tag(session_id, tag)
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return {"removed": tag}


@app.get("/api/projects")
async def get_projects():
    return [p.to_dict() for p in _get_context().get_projects()]


@app.get("/api/tags")
async def get_tags():
    return [t.to_dict() for t in _get_context().get_tags()]


@app.get("/api/stats")
async def get_stats():
    return _get_context().get_stats().to_dict()


@app.post("/api/sync")
async def sync_sessions(
    limit: int | None = Query(None, ge=1),
    source: str = Query("all", description="cursor, claude or all"),
):
    """Index sessions not yet present in the metadata index."""
    try:
        synced = _get_context().sync_sessions(limit=limit, source=source)
    except (ChatContextError, ValueError) as e:
        raise _http_error(e) from e
    return {"synced": synced}
