"""
Custom exceptions for the Loupe agent.

Storage backends and the transport raise these; the queue, sequence counter
and agent catch them where they originate so nothing reaches the caller of
``write``.
"""

import sqlite3


class LoupeAgentError(Exception):
    """Base error for the Loupe agent."""

    pass


class StorageError(LoupeAgentError):
    """A key/value backend failed to read, write or delete."""

    pass


class StorageQuotaExceeded(StorageError):
    """The backend refused a write because it is out of space."""

    pass


class StorageUnavailable(StorageError):
    """The backend cannot be used at all (closed, unreachable, not configured)."""

    pass


class TransportUnavailable(LoupeAgentError):
    """No HTTP client is available to deliver a batch."""

    pass


class InvalidHeaderError(LoupeAgentError):
    """An authorization header was missing its name or value."""

    pass


_QUOTA_MARKERS = ("database or disk is full", "quota")


def map_storage_error(e: Exception) -> StorageError:
    if isinstance(e, StorageError):
        return e
    if isinstance(e, sqlite3.OperationalError) and any(
        marker in str(e).lower() for marker in _QUOTA_MARKERS
    ):
        return StorageQuotaExceeded(str(e))
    if isinstance(e, sqlite3.ProgrammingError) and "closed" in str(e).lower():
        return StorageUnavailable(str(e))
    return StorageError(str(e))
