"""Platform-aware path resolution and user settings."""

import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)

SORT_ORDERS = ("newest", "oldest", "most_messages")


def get_cursor_user_path() -> Path:
    """Return Cursor's ``User`` directory for this platform."""
    env = os.environ.get("CHAT_CONTEXT_CURSOR_PATH")
    if env:
        return Path(env)

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Cursor" / "User"
    elif sys.platform == "win32":
        return Path(os.environ.get("APPDATA", "")) / "Cursor" / "User"
    else:  # Linux
        return Path.home() / ".config" / "Cursor" / "User"


def get_cursor_global_path() -> Path:
    """Return the legacy centralized store (globalStorage/state.vscdb)."""
    return get_cursor_user_path() / "globalStorage" / "state.vscdb"


def get_cursor_workspace_path() -> Path:
    """Return the path to Cursor's workspaceStorage directory."""
    return get_cursor_user_path() / "workspaceStorage"


def get_all_cursor_db_paths() -> list[Path]:
    """Return every Cursor store: the legacy file first, then each workspace file."""
    paths = []
    global_db = get_cursor_global_path()
    if global_db.exists():
        paths.append(global_db)

    ws_root = get_cursor_workspace_path()
    if ws_root.is_dir():
        for ws_dir in sorted(ws_root.iterdir()):
            db_path = ws_dir / "state.vscdb"
            if ws_dir.is_dir() and db_path.exists():
                paths.append(db_path)
    return paths


def get_claude_code_path() -> Path:
    """Return the path to Claude Code's projects directory."""
    env = os.environ.get("CHAT_CONTEXT_CLAUDE_PATH")
    if env:
        return Path(env)

    return Path.home() / ".claude" / "projects"


def get_context_home() -> Path:
    """Return the directory holding the metadata index and config.json."""
    env = os.environ.get("CHAT_CONTEXT_HOME")
    if env:
        return Path(env)

    return Path.home() / ".cursor-context"


def get_metadata_db_path() -> Path:
    return get_context_home() / "metadata.db"


def get_config_path() -> Path:
    return get_context_home() / "config.json"


@dataclass
class Settings:
    """Runtime settings, overridable through config.json."""

    auto_sync: bool = True
    auto_sync_limit: int = 100000
    stale_after_seconds: float = 300.0
    max_retries: int = 3
    timeout_seconds: float = 5.0
    default_limit: int = 20
    default_sort: str = "newest"
    metadata_db_path: str = ""

    def __post_init__(self):
        if not self.metadata_db_path:
            self.metadata_db_path = str(get_metadata_db_path())
        if self.default_sort not in SORT_ORDERS:
            raise ValueError(f"default_sort must be one of: {', '.join(SORT_ORDERS)}")
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")


def load_settings(path: Path | None = None) -> Settings:
    """Load settings from config.json, falling back to defaults.

    Unknown keys are ignored so older config files keep working.
    """
    config_path = path or get_config_path()
    if not config_path.exists():
        return Settings()

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("config root must be an object")
        known = {f.name for f in fields(Settings)}
        return Settings(**{k: v for k, v in data.items() if k in known})
    except (json.JSONDecodeError, OSError, TypeError, ValueError) as e:
        logger.warning("Failed to load %s, using defaults: %s", config_path, e)
        return Settings()
