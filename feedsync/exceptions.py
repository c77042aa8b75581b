"""
Error taxonomy for feed synchronization, plus HTTP helpers for common 404s.

Transient errors are retried by the sync engine under its backoff policy.
Permanent errors surface immediately. Local errors surface and disable
further syncing for the affected context until it is reset.
"""

from enum import Enum
from typing import TypeVar

from fastapi import HTTPException

T = TypeVar("T")


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    LOCAL = "local"


class FeedSyncError(Exception):
    """Base class for all errors raised by the sync layer."""

    kind: ErrorKind = ErrorKind.PERMANENT

    @property
    def transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    @property
    def code(self) -> str:
        """Short machine-readable name used in API payloads."""
        return type(self).__name__


class FetchError(FeedSyncError):
    """A single remote fetch attempt failed."""


class NetworkError(FetchError):
    """Connection failure, timeout or server-side (5xx) error."""

    kind = ErrorKind.TRANSIENT


class RateLimitedError(FetchError):
    """The server asked us to slow down."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponseError(FetchError):
    """Payload failed to parse or did not match the expected schema."""


class UnauthorizedError(FetchError):
    """Credentials were rejected; requires re-authentication."""


class StoreUnavailable(FeedSyncError):
    """
    The local article store could not complete an operation.

    Lock contention is transient; anything else (corruption, I/O fault) is a
    local error that disables syncing for the context.
    """

    def __init__(self, message: str = "Article store unavailable", transient: bool = False):
        super().__init__(message)
        self.kind = ErrorKind.TRANSIENT if transient else ErrorKind.LOCAL


def require_resource(resource: T | None, detail: str = "Resource not found") -> T:
    """
    Raise 404 if resource is None, otherwise return the resource.

    Usage:
        article = require_resource(db.get_article(id), "Article not found")
    """
    if resource is None:
        raise HTTPException(status_code=404, detail=detail)
    return resource


def require_article(article: T | None) -> T:
    """Raise 404 if article is None."""
    return require_resource(article, "Article not found")


def require_category(category: T | None) -> T:
    """Raise 404 if category is None."""
    return require_resource(category, "Category not found")
