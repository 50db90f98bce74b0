#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FetchError(Exception):
    """Base class for failures of a single feed download or parse."""


class TransportError(FetchError):
    """Network-level failure (connection error, timeout, broken payload)."""


class StatusCodeError(FetchError):
    """The upstream feed answered with a non-2xx HTTP status.

    Attributes:
        status_code: HTTP status returned by the server.
    """

    def __init__(self, status_code: int, message: Optional[str] = None):
        super().__init__(message or f"Upstream feed returned HTTP status code {status_code}")
        self.status_code = status_code


class ParseFailure(FetchError):
    """The response body is not a recognisable RSS/Atom document."""


class LockUnavailable(Exception):
    """Another worker holds the channel lock; the channel is skipped this cycle."""

    def __init__(self, channel_id: int):
        super().__init__(f"Lock for channel {channel_id} already acquired")
        self.channel_id = channel_id


class StorageError(Exception):
    """A relational store operation failed (the transaction was rolled back)."""


__all__ = [
    "FetchError",
    "TransportError",
    "StatusCodeError",
    "ParseFailure",
    "LockUnavailable",
    "StorageError",
]
