"""Metadata index: nicknames, tags and derived facts per session.

A SQLite file owned by chat-context, independent of the Cursor and Claude
Code stores it describes. Rows are keyed by source-qualified session id
(``cursor:<uuid>``). One process writes to it at a time; within the process
every operation is serialized by a lock.
"""

import json
import logging
import sqlite3
import threading
from pathlib import Path

from .core import IndexStats, ProjectSummary, SessionMetadata, TagSummary
from .errors import AmbiguousSessionError, NicknameInUseError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS session_metadata (
        session_id TEXT PRIMARY KEY,
        source TEXT NOT NULL,
        nickname TEXT UNIQUE,
        tags TEXT,
        project_path TEXT,
        project_name TEXT,
        has_project INTEGER DEFAULT 0,
        created_at INTEGER,
        last_synced_at INTEGER,
        first_message_preview TEXT,
        message_count INTEGER
    );

    CREATE INDEX IF NOT EXISTS idx_source ON session_metadata(source);
    CREATE INDEX IF NOT EXISTS idx_project_path ON session_metadata(project_path);
    CREATE INDEX IF NOT EXISTS idx_created_at ON session_metadata(created_at DESC);
"""

_COLUMNS = (
    "session_id", "source", "nickname", "tags", "project_path", "project_name",
    "has_project", "created_at", "last_synced_at", "first_message_preview", "message_count",
)


class MetadataIndex:
    """Persistent per-session metadata, stored in SQLite."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        """Open the index, creating the file and schema on first use."""
        with self._lock:
            if self._conn is None:
                if str(self.db_path) != ":memory:":
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._ensure_schema(conn)
                self._conn = conn
            return self._conn

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        with conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
            row = conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
            current = row["v"] or 0
            if current < SCHEMA_VERSION:
                conn.executescript(_SCHEMA)
                conn.execute("INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
                logger.info("Initialized metadata index at %s (schema v%d)", self.db_path, SCHEMA_VERSION)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Reads ────────────────────────────────────────────────────

    def get(self, session_id: str) -> SessionMetadata | None:
        return self._fetch_one("SELECT * FROM session_metadata WHERE session_id = ?", (session_id,))

    def get_by_nickname(self, nickname: str) -> SessionMetadata | None:
        return self._fetch_one("SELECT * FROM session_metadata WHERE nickname = ?", (nickname,))

    def find_by_id_prefix(self, prefix: str) -> SessionMetadata | None:
        """Resolve a partial id the way git resolves abbreviated hashes."""
        if not prefix:
            return None
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self._fetch_all(
            "SELECT * FROM session_metadata WHERE session_id LIKE ? ESCAPE '\\' "
            "OR session_id LIKE ? ESCAPE '\\'",
            (f"{escaped}%", f"%:{escaped}%"),
        )
        if len(rows) > 1:
            raise AmbiguousSessionError(
                f"Ambiguous session ID prefix '{prefix}' matches {len(rows)} sessions. "
                "Please provide more characters."
            )
        return rows[0] if rows else None

    def list_sessions(
        self,
        tagged_only: bool = False,
        limit: int | None = None,
        source: str | None = None,
    ) -> list[SessionMetadata]:
        """List rows, newest first. ``tagged_only`` keeps nicknamed or tagged rows."""
        sql = "SELECT * FROM session_metadata WHERE 1=1"
        params: list = []
        if tagged_only:
            sql += " AND (nickname IS NOT NULL OR tags IS NOT NULL)"
        if source:
            sql += " AND source = ?"
            params.append(source)
        sql += " ORDER BY created_at IS NULL, created_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return self._fetch_all(sql, tuple(params))

    def list_by_project(self, project_path: str) -> list[SessionMetadata]:
        return self._fetch_all(
            "SELECT * FROM session_metadata WHERE project_path = ? "
            "ORDER BY created_at IS NULL, created_at DESC",
            (project_path,),
        )

    def find_by_tag(self, tag: str) -> list[SessionMetadata]:
        return [m for m in self._tagged_rows() if tag in m.tags]

    def list_all(self) -> list[SessionMetadata]:
        return self._fetch_all("SELECT * FROM session_metadata")

    def list_nicknames(self) -> list[str]:
        with self._lock:
            rows = self.connect().execute(
                "SELECT nickname FROM session_metadata WHERE nickname IS NOT NULL ORDER BY nickname"
            ).fetchall()
        return [row["nickname"] for row in rows]

    def list_projects(self) -> list[ProjectSummary]:
        with self._lock:
            rows = self.connect().execute(
                """
                SELECT project_path, MAX(project_name) AS project_name, COUNT(*) AS session_count
                FROM session_metadata
                WHERE project_path IS NOT NULL
                GROUP BY project_path
                ORDER BY session_count DESC, project_path
                """
            ).fetchall()
        return [
            ProjectSummary(
                path=row["project_path"],
                name=row["project_name"] or "unknown",
                session_count=row["session_count"],
            )
            for row in rows
        ]

    def list_tags(self) -> list[TagSummary]:
        counts: dict[str, int] = {}
        for metadata in self._tagged_rows():
            for tag in metadata.tags:
                counts[tag] = counts.get(tag, 0) + 1
        return [
            TagSummary(tag=tag, count=count)
            for tag, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    def get_stats(self) -> IndexStats:
        with self._lock:
            row = self.connect().execute(
                """
                SELECT
                    COUNT(*) AS total_sessions,
                    COALESCE(SUM(CASE WHEN nickname IS NOT NULL THEN 1 ELSE 0 END), 0) AS sessions_with_nicknames,
                    COALESCE(SUM(CASE WHEN tags IS NOT NULL THEN 1 ELSE 0 END), 0) AS sessions_with_tags,
                    COALESCE(SUM(CASE WHEN has_project = 1 THEN 1 ELSE 0 END), 0) AS sessions_with_projects,
                    COUNT(DISTINCT project_path) AS total_projects
                FROM session_metadata
                """
            ).fetchone()
        return IndexStats(
            total_sessions=row["total_sessions"],
            sessions_with_nicknames=row["sessions_with_nicknames"],
            sessions_with_tags=row["sessions_with_tags"],
            sessions_with_projects=row["sessions_with_projects"],
            total_projects=row["total_projects"],
            total_tags=len(self.list_tags()),
        )

    # ── Writes ───────────────────────────────────────────────────

    def upsert(self, metadata: SessionMetadata) -> None:
        """Insert or replace the row for ``metadata.session_id``."""
        if not metadata.source:
            raise ValueError(f"Source is required for session {metadata.session_id}")
        values = _metadata_to_row(metadata)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _COLUMNS[1:])
        with self._lock:
            conn = self.connect()
            if metadata.nickname:
                self._check_nickname_free(metadata.nickname, metadata.session_id)
            with conn:
                conn.execute(
                    f"INSERT INTO session_metadata ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
                    f"ON CONFLICT(session_id) DO UPDATE SET {updates}",
                    values,
                )

    def set_nickname(self, session_id: str, nickname: str | None, source: str) -> None:
        """Set (or with ``None`` clear) a nickname; nicknames are unique.

        A minimal row is created when the session has none yet.
        """
        with self._lock:
            conn = self.connect()
            if nickname:
                self._check_nickname_free(nickname, session_id)
            with conn:
                cur = conn.execute(
                    "UPDATE session_metadata SET nickname = ? WHERE session_id = ?",
                    (nickname or None, session_id),
                )
            if cur.rowcount == 0:
                self.upsert(SessionMetadata(session_id=session_id, source=source, nickname=nickname or None))

    def add_tag(self, session_id: str, tag: str, source: str) -> None:
        """Add ``tag``; adding a tag the session already has is a no-op."""
        with self._lock:
            metadata = self.get(session_id)
            if metadata is None:
                self.upsert(SessionMetadata(session_id=session_id, source=source, tags=[tag]))
                return
            if tag in metadata.tags:
                return
            self._write_tags(session_id, metadata.tags + [tag])

    def remove_tag(self, session_id: str, tag: str) -> None:
        """Remove ``tag``; a missing tag or missing row is a no-op."""
        with self._lock:
            metadata = self.get(session_id)
            if metadata is None or tag not in metadata.tags:
                return
            self._write_tags(session_id, [t for t in metadata.tags if t != tag])

    def delete(self, session_id: str) -> None:
        with self._lock:
            conn = self.connect()
            with conn:
                conn.execute("DELETE FROM session_metadata WHERE session_id = ?", (session_id,))

    # ── Private helpers ──────────────────────────────────────────

    def _write_tags(self, session_id: str, tags: list[str]) -> None:
        conn = self.connect()
        with conn:
            conn.execute(
                "UPDATE session_metadata SET tags = ? WHERE session_id = ?",
                (_encode_tags(tags), session_id),
            )

    def _tagged_rows(self) -> list[SessionMetadata]:
        rows = self._fetch_all(
            "SELECT * FROM session_metadata WHERE tags IS NOT NULL "
            "ORDER BY created_at IS NULL, created_at DESC"
        )
        return [m for m in rows if m.tags]

    def _check_nickname_free(self, nickname: str, session_id: str) -> None:
        owner = self.get_by_nickname(nickname)
        if owner is not None and owner.session_id != session_id:
            raise NicknameInUseError(nickname, owner.session_id)

    def _fetch_one(self, sql: str, params: tuple = ()) -> SessionMetadata | None:
        with self._lock:
            row = self.connect().execute(sql, params).fetchone()
        return _row_to_metadata(row) if row else None

    def _fetch_all(self, sql: str, params: tuple = ()) -> list[SessionMetadata]:
        with self._lock:
            rows = self.connect().execute(sql, params).fetchall()
        return [_row_to_metadata(row) for row in rows]


def _encode_tags(tags: list[str]) -> str | None:
    unique = list(dict.fromkeys(tags))
    return json.dumps(unique) if unique else None


def _decode_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring unreadable tags value: %r", raw)
        return []
    return [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else []


def _metadata_to_row(m: SessionMetadata) -> tuple:
    return (
        m.session_id,
        m.source,
        m.nickname or None,
        _encode_tags(m.tags),
        m.project_path,
        m.project_name,
        1 if m.has_project else 0,
        m.created_at,
        m.last_synced_at,
        m.first_message_preview,
        m.message_count,
    )


def _row_to_metadata(row: sqlite3.Row) -> SessionMetadata:
    return SessionMetadata(
        session_id=row["session_id"],
        source=row["source"],
        nickname=row["nickname"],
        tags=_decode_tags(row["tags"]),
        project_path=row["project_path"],
        project_name=row["project_name"],
        has_project=bool(row["has_project"]),
        created_at=row["created_at"],
        first_message_preview=row["first_message_preview"],
        message_count=row["message_count"],
        last_synced_at=row["last_synced_at"],
    )
