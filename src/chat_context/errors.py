"""Exception types raised by chat-context."""


class ChatContextError(Exception):
    """Base error for all chat-context operations."""


class DBConnectionError(ChatContextError):
    """A source store is missing or could not be opened or queried."""

    def __init__(self, message: str, db_path: str = ""):
        super().__init__(message)
        self.db_path = db_path


class DBLockedError(ChatContextError):
    """A source store stayed busy after all retries."""

    def __init__(self, message: str = "Database is locked by another process (likely Cursor)"):
        super().__init__(message)


class SessionNotFoundError(ChatContextError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class DataCorruptionError(ChatContextError):
    def __init__(self, message: str):
        super().__init__(f"Data corruption: {message}")


class NicknameInUseError(ChatContextError):
    def __init__(self, nickname: str, session_id: str):
        super().__init__(f"Nickname '{nickname}' is already in use by session {session_id}")
        self.nickname = nickname
        self.session_id = session_id


class AmbiguousSessionError(ChatContextError):
    """An id or id prefix resolves to more than one session."""
