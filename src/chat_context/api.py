"""High-level API tying the session sources to the metadata index.

:class:`ChatContext` is an explicit handle: build one per process (or per
test) and pass it to whatever needs it. Reads are answered from the index
when possible; a miss can trigger a sync from the source stores, which are
only ever read.
"""

import logging
import time
from collections.abc import Callable, Iterable, Mapping

from .backends import get_sources
from .config import SORT_ORDERS, Settings, load_settings
from .core import (
    ContextStats,
    ParseOptions,
    ProjectSummary,
    SessionDetail,
    SessionMetadata,
    TagSummary,
)
from .errors import AmbiguousSessionError, ChatContextError, SessionNotFoundError
from .index import MetadataIndex
from .provider import SessionSource

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200
STATS_SAMPLE_SIZE = 1000


class ChatContext:
    """Session listing, lookup, search, annotation and sync."""

    def __init__(
        self,
        sources: Mapping[str, SessionSource] | Iterable[SessionSource],
        index: MetadataIndex,
        auto_sync: bool = True,
        auto_sync_limit: int = 100000,
        stale_after_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        if isinstance(sources, Mapping):
            self.sources = dict(sources)
        else:
            self.sources = {s.name: s for s in sources}
        self.index = index
        self.auto_sync = auto_sync
        self.auto_sync_limit = auto_sync_limit
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._last_sync = 0.0

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        sources: Mapping[str, SessionSource] | None = None,
    ) -> "ChatContext":
        settings = settings or load_settings()
        return cls(
            sources=sources if sources is not None else get_sources(settings),
            index=MetadataIndex(settings.metadata_db_path),
            auto_sync=settings.auto_sync,
            auto_sync_limit=settings.auto_sync_limit,
            stale_after_seconds=settings.stale_after_seconds,
        )

    def close(self) -> None:
        for source in self.sources.values():
            source.close()
        self.index.close()

    def __enter__(self) -> "ChatContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── Queries ──────────────────────────────────────────────────

    def list_sessions(
        self,
        project_path: str | None = None,
        tag: str | None = None,
        tagged_only: bool = False,
        sort_by: str = "newest",
        limit: int | None = None,
        source: str = "all",
        sync_first: bool = False,
    ) -> list[SessionMetadata]:
        """List indexed sessions.

        A tag filter takes precedence over a project filter, which takes
        precedence over the general listing. The index is synced first when
        ``sync_first`` is set, or with auto-sync when the last sync is older
        than ``stale_after_seconds``.
        """
        if sort_by not in SORT_ORDERS:
            raise ValueError(f"sort_by must be one of: {', '.join(SORT_ORDERS)}")
        if sync_first or (self.auto_sync and self._is_stale()):
            self.sync_sessions(self.auto_sync_limit, source)

        if tag:
            sessions = self.index.find_by_tag(tag)
            if project_path:
                sessions = [s for s in sessions if s.project_path == project_path]
        elif project_path:
            sessions = self.index.list_by_project(project_path)
            if tagged_only:
                sessions = [s for s in sessions if _is_annotated(s)]
        else:
            sessions = self.index.list_sessions(tagged_only=tagged_only)

        if source != "all":
            sessions = [s for s in sessions if s.source == source]
        return _sort_and_limit(sessions, sort_by, limit)

    def get_session(
        self,
        id_or_nickname: str,
        parse_options: ParseOptions | None = None,
        include_messages: bool = True,
    ) -> SessionDetail:
        """Resolve a session by nickname or id and optionally load its messages.

        Resolution order: nickname, exact id, source-prefixed id, unique id
        prefix, then (with auto-sync) a sync from each candidate source.
        Messages are read from the source only when ``include_messages``.
        """
        metadata = self._resolve(id_or_nickname)
        if metadata is None and self.auto_sync:
            for name, raw_id in self._candidates(id_or_nickname):
                metadata = self.sync_session(name, raw_id)
                if metadata is not None:
                    break
        if metadata is None:
            raise SessionNotFoundError(id_or_nickname)

        messages = []
        if include_messages:
            source = self.sources.get(metadata.source)
            if source is None:
                raise SessionNotFoundError(metadata.session_id)
            raw_messages = source.get_raw_messages(metadata.raw_id)
            messages = source.parse_messages(raw_messages, parse_options)
        return SessionDetail(metadata=metadata, messages=messages)

    def search_sessions(
        self,
        query: str,
        project_path: str | None = None,
        tagged_only: bool = False,
        limit: int | None = None,
        case_sensitive: bool = False,
    ) -> list[SessionMetadata]:
        """Substring search over nickname, first message, tags and project name.

        A session matches if any one field matches. Results are unranked and
        keep the newest-first listing order.
        """
        needle = query if case_sensitive else query.lower()

        def matches(value: str | None) -> bool:
            if not value:
                return False
            return needle in (value if case_sensitive else value.lower())

        results = []
        for session in self.list_sessions(project_path=project_path, tagged_only=tagged_only):
            if (
                matches(session.nickname)
                or matches(session.first_message_preview)
                or any(matches(t) for t in session.tags)
                or matches(session.project_name)
            ):
                results.append(session)
        return results[:limit] if limit else results

    def get_projects(self) -> list[ProjectSummary]:
        return self.index.list_projects()

    def get_tags(self) -> list[TagSummary]:
        return self.index.list_tags()

    def get_stats(self) -> ContextStats:
        """Index counts plus a sampled count of sessions in each source.

        Source counts stop at ``STATS_SAMPLE_SIZE`` per source, so they are a
        lower bound for very large stores.
        """
        index_stats = self.index.get_stats()
        by_source = {}
        for name, source in self.sources.items():
            try:
                by_source[name] = len(source.list_ids(STATS_SAMPLE_SIZE))
            except ChatContextError as e:
                logger.warning("Could not count %s sessions: %s", name, e)
                by_source[name] = 0
        return ContextStats(
            total_sessions_in_sources=sum(by_source.values()),
            total_sessions_with_metadata=index_stats.total_sessions,
            sessions_with_nicknames=index_stats.sessions_with_nicknames,
            sessions_with_tags=index_stats.sessions_with_tags,
            sessions_with_projects=index_stats.sessions_with_projects,
            total_tags=index_stats.total_tags,
            total_projects=index_stats.total_projects,
            sessions_by_source=by_source,
        )

    # ── Annotations ──────────────────────────────────────────────

    def set_nickname(self, session_id: str, nickname: str) -> SessionMetadata:
        name, raw_id = self._locate(session_id)
        qualified = _qualify(name, raw_id)
        self._ensure_indexed(name, raw_id)
        self.index.set_nickname(qualified, nickname, source=name)
        return self.index.get(qualified)

    def add_tag(self, session_id: str, tag: str) -> SessionMetadata:
        name, raw_id = self._locate(session_id)
        qualified = _qualify(name, raw_id)
        self._ensure_indexed(name, raw_id)
        self.index.add_tag(qualified, tag, source=name)
        return self.index.get(qualified)

    def remove_tag(self, session_id: str, tag: str) -> None:
        """Remove a tag. Unknown sessions are silently ignored."""
        metadata = self._resolve(session_id, by_prefix=False)
        if metadata is not None:
            self.index.remove_tag(metadata.session_id, tag)

    # ── Sync ─────────────────────────────────────────────────────

    def sync_session(self, source_name: str, raw_id: str) -> SessionMetadata | None:
        """Derive and store the index row for one session.

        Best effort: any failure is logged and reported as None so a batch
        sync is never stopped by one unreadable session. Annotations already
        present on the row are kept.
        """
        try:
            source = self.sources[source_name]
            session = source.get_session(raw_id)
            if session is None:
                return None
            raw_messages = source.get_raw_messages(raw_id)
            if source.is_empty(session, raw_messages):
                logger.debug("Skipping empty %s session %s", source_name, raw_id)
                return None

            messages = source.parse_messages(raw_messages)
            workspace = source.workspace_info(session, raw_messages)
            qualified = _qualify(source_name, raw_id)
            existing = self.index.get(qualified)

            nickname = existing.nickname if existing else workspace.nickname
            if nickname and existing is None:
                owner = self.index.get_by_nickname(nickname)
                if owner is not None and owner.session_id != qualified:
                    nickname = None

            first_user = next((m.content for m in messages if m.role == "user"), "")
            metadata = SessionMetadata(
                session_id=qualified,
                source=source_name,
                nickname=nickname,
                tags=list(existing.tags) if existing else [],
                project_path=workspace.primary_path,
                project_name=workspace.project_name,
                has_project=workspace.has_project,
                created_at=source.created_at(session, raw_messages),
                first_message_preview=first_user[:PREVIEW_LENGTH] or None,
                message_count=len(messages),
                last_synced_at=int(self._clock() * 1000),
            )
            self.index.upsert(metadata)
            return metadata
        except Exception as e:
            logger.warning("Failed to sync %s session %s: %s", source_name, raw_id, e)
            return None

    def sync_sessions(self, limit: int | None = None, source: str = "all") -> int:
        """Index sessions not yet in the index; return how many were added.

        Sessions already indexed are skipped, never refreshed.
        """
        synced = 0
        for name, src in self._select_sources(source):
            try:
                ids = src.list_ids(limit)
            except ChatContextError as e:
                logger.warning("Could not list %s sessions: %s", name, e)
                continue
            for raw_id in ids:
                if self.index.get(_qualify(name, raw_id)) is not None:
                    continue
                if self.sync_session(name, raw_id) is not None:
                    synced += 1

        self._last_sync = self._clock()
        logger.info("Synced %d new session(s) from %s", synced, source)
        return synced

    # ── Private helpers ──────────────────────────────────────────

    def _is_stale(self) -> bool:
        return self._clock() - self._last_sync > self.stale_after_seconds

    def _select_sources(self, source: str) -> list[tuple[str, SessionSource]]:
        if source in (None, "", "all"):
            return list(self.sources.items())
        if source not in self.sources:
            raise ValueError(f"Unknown source: {source}")
        return [(source, self.sources[source])]

    def _split(self, session_id: str) -> tuple[str | None, str]:
        prefix, sep, rest = session_id.partition(":")
        if sep and prefix in self.sources:
            return prefix, rest
        return None, session_id

    def _candidates(self, session_id: str) -> list[tuple[str, str]]:
        name, raw_id = self._split(session_id)
        if name is not None:
            return [(name, raw_id)]
        return [(n, raw_id) for n in self.sources]

    def _resolve(self, id_or_nickname: str, by_prefix: bool = True) -> SessionMetadata | None:
        metadata = self.index.get_by_nickname(id_or_nickname) or self.index.get(id_or_nickname)
        if metadata is not None:
            return metadata
        name, _ = self._split(id_or_nickname)
        if name is None:
            for candidate, raw_id in self._candidates(id_or_nickname):
                metadata = self.index.get(_qualify(candidate, raw_id))
                if metadata is not None:
                    return metadata
        if not by_prefix:
            return None
        return self.index.find_by_id_prefix(id_or_nickname)

    def _locate(self, session_id: str) -> tuple[str, str]:
        """Find which source currently holds ``session_id``.

        A bare id found in more than one source must be given with its
        ``<source>:`` prefix.
        """
        hits = [
            (name, raw_id)
            for name, raw_id in self._candidates(session_id)
            if self.sources[name].get_session(raw_id) is not None
        ]
        if not hits:
            raise SessionNotFoundError(session_id)
        if len(hits) > 1:
            options = " or ".join(_qualify(n, r) for n, r in hits)
            raise AmbiguousSessionError(
                f"Session ID {session_id} exists in several sources. Please specify one of: {options}"
            )
        return hits[0]

    def _ensure_indexed(self, name: str, raw_id: str) -> None:
        if self.auto_sync and self.index.get(_qualify(name, raw_id)) is None:
            self.sync_session(name, raw_id)


def _qualify(source_name: str, raw_id: str) -> str:
    return f"{source_name}:{raw_id}"


def _is_annotated(session: SessionMetadata) -> bool:
    return bool(session.nickname or session.tags)


def _sort_and_limit(
    sessions: list[SessionMetadata], sort_by: str, limit: int | None
) -> list[SessionMetadata]:
    """Sort sessions; undated sessions go last for both date orders."""
    if sort_by in ("newest", "oldest"):
        dated = [s for s in sessions if s.created_at is not None]
        undated = [s for s in sessions if s.created_at is None]
        dated.sort(key=lambda s: s.created_at, reverse=sort_by == "newest")
        ordered = dated + undated
    else:
        ordered = sorted(sessions, key=lambda s: s.message_count or 0, reverse=True)
    return ordered[:limit] if limit else ordered
