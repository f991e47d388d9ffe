"""Cursor IDE chat history backend.

Reads chat data from Cursor's SQLite key-value stores (state.vscdb) in both
the legacy globalStorage location and every workspaceStorage location. All
database access is read-only; nothing here ever writes to a Cursor store.

Two physical layouts exist:

- New layout: one ``ItemTable`` row ``composer.composerData`` holding an
  ``allComposers`` list of session summaries.
- Legacy layout: ``cursorDiskKV`` rows ``composerData:<composerId>`` (one
  full session record each) and ``bubbleId:<composerId>:<bubbleId>`` (one
  message each).
"""

import json
import logging
import sqlite3
import time
from pathlib import Path

from ..config import get_all_cursor_db_paths
from ..core import Message, ParseOptions, WorkspaceInfo
from ..errors import (
    ChatContextError,
    DataCorruptionError,
    DBConnectionError,
    DBLockedError,
    SessionNotFoundError,
)
from ..parser import parse_bubbles, to_epoch_ms
from ..provider import SessionSource
from ..workspace import (
    extract_workspace_from_session,
    get_workspace_info,
    is_empty_session,
    project_name,
)

logger = logging.getLogger(__name__)

COMPOSER_INDEX_KEY = "composer.composerData"
SESSION_PREFIX = "composerData:"
BUBBLE_PREFIX = "bubbleId:"


def backoff_seconds(attempt: int) -> float:
    """Delay before retrying after failed ``attempt`` (1-based)."""
    return min(100 * 2 ** (attempt - 1), 1000) / 1000


def _is_busy(error: sqlite3.Error) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class CursorStore:
    """Read-only access to one Cursor ``state.vscdb`` file."""

    def __init__(self, db_path: Path | str, timeout: float = 5.0, max_retries: int = 3):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.max_retries = max_retries
        self._conn: sqlite3.Connection | None = None
        self._tables: set[str] | None = None

    def connect(self) -> sqlite3.Connection:
        """Open the store read-only, retrying while it is locked."""
        if self._conn is not None:
            return self._conn

        if not self.db_path.exists():
            raise DBConnectionError(f"Cursor database not found at: {self.db_path}", str(self.db_path))

        uri = self.db_path.resolve().as_uri() + "?mode=ro"
        for attempt in range(1, self.max_retries + 1):
            conn = None
            try:
                conn = sqlite3.connect(uri, uri=True, timeout=self.timeout)
                conn.execute("PRAGMA journal_mode").fetchone()
            except sqlite3.Error as e:
                if conn is not None:
                    conn.close()
                if not _is_busy(e):
                    raise DBConnectionError(
                        f"Failed to connect to database: {e}", str(self.db_path)
                    ) from e
                if attempt == self.max_retries:
                    raise DBLockedError(
                        "Database is locked. Make sure Cursor is not performing intensive operations."
                    ) from e
                delay = backoff_seconds(attempt)
                logger.debug("%s is busy, retrying in %.1fs (attempt %d)", self.db_path, delay, attempt)
                time.sleep(delay)
                continue

            self._conn = conn
            return conn

        raise DBLockedError()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Error closing %s: %s", self.db_path, e)
            self._conn = None
            self._tables = None

    def __enter__(self) -> "CursorStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Public API ───────────────────────────────────────────────

    def list_ids(self, limit: int | None = None) -> list[str]:
        """List composer ids.

        New layout order is kept as stored; legacy keys are ordered by raw
        key descending, which only approximates recency.
        """
        composers = self._composer_index()
        if composers is not None:
            ids = [c["composerId"] for c in composers if c.get("composerId")]
            return ids[:limit] if limit else ids

        if not self._has_table("cursorDiskKV"):
            return []

        sql = "SELECT key FROM cursorDiskKV WHERE key LIKE ? ORDER BY key DESC"
        params: tuple = (f"{SESSION_PREFIX}%",)
        if limit:
            sql += " LIMIT ?"
            params += (limit,)
        rows = self._query(sql, params)
        return [row[0].split(":", 1)[1] for row in rows]

    def get_session(self, composer_id: str) -> dict | None:
        """Return the session record for ``composer_id``, or None."""
        raw = self._kv_value(f"{SESSION_PREFIX}{composer_id}")
        if raw is not None:
            return _decode_record(raw, f"composer data: {composer_id}")

        try:
            composers = self._composer_index() or []
        except DataCorruptionError as e:
            logger.warning("Ignoring unreadable session index in %s: %s", self.db_path, e)
            return None
        for composer in composers:
            if composer.get("composerId") == composer_id:
                return dict(composer)
        return None

    def get_bubble(self, composer_id: str, bubble_id: str) -> dict | None:
        raw = self._kv_value(f"{BUBBLE_PREFIX}{composer_id}:{bubble_id}")
        if raw is None:
            return None
        return _decode_record(raw, f"bubble data: {bubble_id}")

    def get_messages(self, composer_id: str) -> list[dict]:
        """Return every stored bubble of a session, in conversation order.

        Headers whose bubble body is missing are skipped: Cursor writes the
        header list before the bodies, so partial sessions are normal.
        """
        session = self.get_session(composer_id)
        if session is None:
            raise SessionNotFoundError(composer_id)

        headers = session.get("fullConversationHeadersOnly") or session.get("conversation") or []
        bubbles = []
        for header in headers:
            if not isinstance(header, dict) or not header.get("bubbleId"):
                continue
            bubble = self.get_bubble(composer_id, header["bubbleId"])
            if bubble is None:
                logger.debug("Missing bubble %s in session %s", header["bubbleId"], composer_id)
                continue
            bubble.setdefault("bubbleId", header["bubbleId"])
            bubble.setdefault("type", header.get("type"))
            bubbles.append(bubble)
        return bubbles

    # ── Private helpers ──────────────────────────────────────────

    def _query(self, sql: str, params: tuple = ()) -> list[tuple]:
        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            if _is_busy(e):
                raise DBLockedError() from e
            raise DBConnectionError(f"Query failed on {self.db_path}: {e}", str(self.db_path)) from e

    def _has_table(self, name: str) -> bool:
        if self._tables is None:
            rows = self._query("SELECT name FROM sqlite_master WHERE type = 'table'")
            self._tables = {row[0] for row in rows}
        return name in self._tables

    def _value(self, table: str, key: str) -> str | None:
        if not self._has_table(table):
            return None
        rows = self._query(f"SELECT value FROM {table} WHERE key = ?", (key,))
        if not rows or rows[0][0] is None:
            return None
        value = rows[0][0]
        return value if isinstance(value, str) else bytes(value).decode("utf-8", errors="replace")

    def _kv_value(self, key: str) -> str | None:
        return self._value("cursorDiskKV", key)

    def _composer_index(self) -> list[dict] | None:
        """Return the new-layout session summaries, or None if absent."""
        raw = self._value("ItemTable", COMPOSER_INDEX_KEY)
        if raw is None:
            return None
        data = _decode_record(raw, COMPOSER_INDEX_KEY)
        composers = data.get("allComposers")
        if not isinstance(composers, list):
            return None
        return [c for c in composers if isinstance(c, dict)]


def _decode_record(raw: str, label: str) -> dict:
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise DataCorruptionError(f"Invalid JSON in {label}") from e
    if not isinstance(data, dict):
        raise DataCorruptionError(f"Expected an object in {label}")
    return data


class AggregatedCursorStore:
    """Fan out over every Cursor store discovered on this machine.

    Stores are tried in discovery order (legacy global file first). The same
    session id found in two stores is not reconciled: the first hit wins.
    """

    def __init__(
        self,
        db_paths: list[Path] | None = None,
        timeout: float = 5.0,
        max_retries: int = 3,
    ):
        if db_paths is None:
            db_paths = get_all_cursor_db_paths()
        self.stores = [CursorStore(p, timeout=timeout, max_retries=max_retries) for p in db_paths]

    @property
    def db_paths(self) -> list[Path]:
        return [s.db_path for s in self.stores]

    @property
    def database_count(self) -> int:
        return len(self.stores)

    def list_ids(self, limit: int | None = None) -> list[str]:
        ids: dict[str, None] = {}
        for store in self.stores:
            try:
                for composer_id in store.list_ids():
                    ids.setdefault(composer_id, None)
            except ChatContextError as e:
                logger.warning("Skipping database %s: %s", store.db_path, e)
        merged = list(ids)
        return merged[:limit] if limit else merged

    def get_session(self, composer_id: str) -> dict | None:
        """Return the first stored record for ``composer_id``, or None.

        Unreadable stores are skipped. If no store has the session, a corrupt
        record or a locked store met along the way is raised instead.
        """
        errors: list[ChatContextError] = []
        for store in self.stores:
            try:
                session = store.get_session(composer_id)
            except ChatContextError as e:
                logger.debug("Lookup of %s failed in %s: %s", composer_id, store.db_path, e)
                errors.append(e)
                continue
            if session is not None:
                return session
        for error in errors:
            if isinstance(error, (DataCorruptionError, DBLockedError)):
                raise error
        return None

    def get_messages(self, composer_id: str) -> list[dict]:
        found = False
        error: ChatContextError | None = None
        for store in self.stores:
            try:
                bubbles = store.get_messages(composer_id)
            except SessionNotFoundError:
                continue
            except ChatContextError as e:
                logger.debug("Reading %s failed in %s: %s", composer_id, store.db_path, e)
                error = error or e
                continue
            if bubbles:
                return bubbles
            found = True

        if found:
            return []
        if error is not None:
            raise error
        raise SessionNotFoundError(composer_id)

    def close(self) -> None:
        for store in self.stores:
            store.close()


class CursorSource(SessionSource):
    """Session source backed by every Cursor store on this machine."""

    name = "cursor"

    def __init__(self, store: AggregatedCursorStore | None = None):
        self.store = store if store is not None else AggregatedCursorStore()

    def is_available(self) -> bool:
        return self.store.database_count > 0

    def list_ids(self, limit: int | None = None) -> list[str]:
        return self.store.list_ids(limit)

    def get_session(self, session_id: str) -> dict | None:
        return self.store.get_session(session_id)

    def get_raw_messages(self, session_id: str) -> list[dict]:
        return self.store.get_messages(session_id)

    def parse_messages(
        self, raw_messages: list[dict], options: ParseOptions | None = None
    ) -> list[Message]:
        return parse_bubbles(raw_messages, options)

    def workspace_info(self, session: dict, raw_messages: list[dict]) -> WorkspaceInfo:
        info = get_workspace_info(raw_messages)
        if not info.primary_path:
            fallback = extract_workspace_from_session(session)
            if fallback:
                info.primary_path = fallback
                info.project_name = project_name(fallback)
                info.all_paths = [fallback]
                info.has_project = True
        return info

    def created_at(self, session: dict, raw_messages: list[dict]) -> int | None:
        return to_epoch_ms(session.get("createdAt"))

    def is_empty(self, session: dict, raw_messages: list[dict]) -> bool:
        return is_empty_session(session) or not raw_messages

    def close(self) -> None:
        self.store.close()
