#!/usr/bin/env python3
"""Common error types shared across modules.

Fetch errors all roll up to a "sync failure" for health tracking; storage
errors fail the job so the queue can retry it.
"""

from typing import Optional


class FeedSyncError(Exception):
    """Base class for every error raised by the sync engine."""


class FeedFetchError(FeedSyncError):
    """Raised when a single feed fetch cannot produce a document."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class HttpFetchError(FeedFetchError):
    """Non-2xx (and non-304) HTTP response.

    Attributes:
        status: The HTTP status code returned by the server.
    """

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}", url=url)
        self.status = status


class FetchTimeoutError(FeedFetchError):
    """The request did not complete within the configured timeout."""

    def __init__(self, timeout: float, url: Optional[str] = None):
        super().__init__(f"Timed out after {timeout}s", url=url)
        self.timeout = timeout


class NetworkFetchError(FeedFetchError):
    """DNS, connection or transport failure."""


class FeedParseError(FeedFetchError):
    """A successful response whose body is not a feed document."""


class StorageError(FeedSyncError):
    """A database operation failed.

    Attributes:
        operation: Name of the DatabaseQueue operation that failed.
    """

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class DuplicateItemError(StorageError):
    """An item with the same guid already exists for the feed."""


__all__ = [
    "FeedSyncError",
    "FeedFetchError",
    "HttpFetchError",
    "FetchTimeoutError",
    "NetworkFetchError",
    "FeedParseError",
    "StorageError",
    "DuplicateItemError",
]
