from __future__ import annotations

from typing import Optional


class GroupSentryError(Exception):
    """Base class for errors raised by groupsentry."""


class ApiError(GroupSentryError):
    """Non-success response from the group API."""

    def __init__(self, status: int, message: str, body: Optional[str] = None) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.body = body


class RateLimitedError(ApiError):
    """Still rate limited after the bounded number of waits."""


class ServerUnavailableError(ApiError):
    """Server errors persisted past the retry budget."""


class MalformedEntryError(GroupSentryError, ValueError):
    """An audit log item could not be parsed."""


class SchemaError(GroupSentryError):
    """The database schema is not compatible with this version."""
