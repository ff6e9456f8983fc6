"""
Error taxonomy for AuditVault.

Every component reports typed errors so the archiver can tell a flaky
network apart from a tampered archive.

Invariants:
    - Only TransientStorageError (and subclasses) is ever retried
    - Structural decode problems are reported as data, not raised
    - Messages never include credentials
"""

from __future__ import annotations


class ArchiveError(Exception):
    """Base exception for archive operations."""

    pass


class StorageError(ArchiveError):
    """Object storage operation failed (non-transient)."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class TransientStorageError(StorageError):
    """Object storage failure that is safe to retry (network, 5xx, throttling)."""

    pass


class StorageTimeoutError(TransientStorageError):
    """Object storage operation exceeded its timeout."""

    pass


class ObjectNotFoundError(StorageError):
    """Requested object does not exist."""

    pass


class StoragePermissionError(StorageError):
    """Credentials were rejected or access was denied."""

    pass


class StorageQuotaError(StorageError):
    """Storage quota or size limit was exceeded."""

    pass


class CatalogError(ArchiveError):
    """Archive catalog could not be read or written."""

    pass


class ArchiveNotFoundError(ArchiveError):
    """No catalog record exists for the requested archive."""

    def __init__(self, archive_id: str | None, message: str | None = None) -> None:
        super().__init__(message or f"Archive not found: {archive_id}")
        self.archive_id = archive_id


class ArchivedEventNotFoundError(ArchiveNotFoundError):
    """No archive holds the requested event sequence."""

    def __init__(self, sequence: int, archive_id: str | None = None) -> None:
        where = f"archive {archive_id}" if archive_id else "any archive"
        super().__init__(archive_id, f"Event {sequence} not found in {where}")
        self.sequence = sequence


class EventSourceError(ArchiveError):
    """Live event store operation failed."""

    pass


class DuplicateEventError(EventSourceError):
    """An event with the same sequence already exists in the live store."""

    def __init__(self, sequence: int) -> None:
        super().__init__(f"Event with sequence {sequence} already exists")
        self.sequence = sequence


class OperationCancelledError(ArchiveError):
    """Operation stopped because its cancel signal was set."""

    pass
