"""Session source registry."""

from ..config import Settings
from ..provider import SessionSource
from .claude_code import ClaudeCodeSource
from .cursor import AggregatedCursorStore, CursorSource

SOURCE_NAMES = ("cursor", "claude")


def get_sources(settings: Settings | None = None) -> dict[str, SessionSource]:
    """Build every known source, keyed by name, whether or not it has data."""
    settings = settings or Settings()
    store = AggregatedCursorStore(
        timeout=settings.timeout_seconds,
        max_retries=settings.max_retries,
    )
    return {
        "cursor": CursorSource(store),
        "claude": ClaudeCodeSource(),
    }
