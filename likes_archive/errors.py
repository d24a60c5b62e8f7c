from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class NavigationFailed(RuntimeError):
    """Raised when the browser session cannot reach an authenticated feed or a page wait times out."""

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class StorageError(RuntimeError):
    """Raised when reading or writing the archive database fails."""


class MediaFetchError(RuntimeError):
    """Raised when a single media asset cannot be fetched or written."""

    def __init__(self, message: str, *, url: str, post_id: str) -> None:
        super().__init__(message)
        self.url = url
        self.post_id = post_id


class ThreadIncomplete(RuntimeError):
    """Raised when a conversation has members that are not in the archive."""

    def __init__(self, conversation_id: str, missing: list[str]) -> None:
        joined = ", ".join(missing)
        super().__init__(f"Conversation {conversation_id} has unverified members: {joined}")
        self.conversation_id = conversation_id
        self.missing = list(missing)
