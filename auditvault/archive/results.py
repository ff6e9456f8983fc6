"""
Result types returned by Archiver operations.

These are plain data objects; none of them is persisted except through the
catalog operations log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from ..catalog.catalog import ArchiveBatch
from ..source.base import AuditEvent


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ArchiveRunResult:
    """Outcome of one archive() run.

    Attributes:
        events_archived: Events in fully committed pages (or that a real run
            would commit, for a dry run)
        batches: Committed batches, or estimates for a dry run
        elapsed_seconds: Wall time of the run
        dry_run: Whether nothing was written
        cancelled: Whether the run stopped on the cancel signal
        error: Failure that stopped the run, if any
    """

    events_archived: int = 0
    batches: list[ArchiveBatch] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    dry_run: bool = False
    cancelled: bool = False
    error: str | None = None

    @property
    def events_per_second(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.events_archived / self.elapsed_seconds

    @property
    def success(self) -> bool:
        return self.error is None and not self.cancelled


@dataclass
class IntegrityVerificationResult:
    """Outcome of verifying one archive.

    Attributes:
        archive_id: Archive checked
        is_valid: All three checks passed
        event_count: Events decoded from the object
        hash_chain_valid: Recomputed chain matches stored hashes and terminal
        metadata_valid: Decoded batch matches catalog metadata
        parquet_valid: Object decoded without structural errors
        first_divergent_index: First event whose hash does not reproduce
        errors: Diagnostics, each naming the archive and the failed check
        verified_at: When verification finished
    """

    archive_id: str
    is_valid: bool = False
    event_count: int = 0
    hash_chain_valid: bool = False
    metadata_valid: bool = False
    parquet_valid: bool = False
    first_divergent_index: int | None = None
    errors: list[str] = field(default_factory=list)
    verified_at: datetime = field(default_factory=_utcnow)


@dataclass
class RestoreResult:
    """Outcome of restoring one archive into the live store."""

    archive_id: str
    verification: IntegrityVerificationResult
    events_restored: int = 0
    restore_time: float = 0.0
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False
    events_would_restore: int = 0

    @property
    def verification_status(self) -> str:
        return "VALID" if self.verification.is_valid else "INVALID"


@dataclass
class ArchiveStats:
    """Aggregate statistics over the catalog.

    Attributes:
        total_archives: Number of batches
        total_events: Sum of event counts
        total_size_bytes: Sum of stored object sizes
        average_size_bytes: Mean stored object size
        compression_ratio: Uncompressed canonical bytes / stored bytes
        oldest_archive: Earliest covered event time
        newest_archive: Latest covered event time
        archives_by_year: Year of a batch's first event -> batch count
        events_by_compliance: Compliance flag -> event count
        collected_at: When the statistics were computed
    """

    total_archives: int = 0
    total_events: int = 0
    total_size_bytes: int = 0
    average_size_bytes: float = 0.0
    compression_ratio: float = 0.0
    oldest_archive: datetime | None = None
    newest_archive: datetime | None = None
    archives_by_year: dict[int, int] = field(default_factory=dict)
    events_by_compliance: dict[str, int] = field(default_factory=dict)
    collected_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ArchiveQuery:
    """Filter over archived events.

    Empty actor/action/resource sets match everything. A limit of 0 means
    no limit.
    """

    start_time: datetime
    end_time: datetime
    actors: frozenset[str] = frozenset()
    actions: frozenset[str] = frozenset()
    resources: frozenset[str] = frozenset()
    limit: int = 1000

    def __post_init__(self) -> None:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        if self.limit < 0:
            raise ValueError(f"limit must not be negative, got {self.limit}")
        object.__setattr__(self, "actors", frozenset(self.actors))
        object.__setattr__(self, "actions", frozenset(self.actions))
        object.__setattr__(self, "resources", frozenset(self.resources))

    def matches(self, event: AuditEvent) -> bool:
        if not self.start_time <= event.occurred_at <= self.end_time:
            return False
        if self.actors and event.actor not in self.actors:
            return False
        if self.actions and event.action not in self.actions:
            return False
        if self.resources and event.resource not in self.resources:
            return False
        return True


@dataclass
class ArchiveQueryResult:
    """Events matching an ArchiveQuery."""

    events: list[AuditEvent] = field(default_factory=list)
    archives_scanned: int = 0
    archives_failed: int = 0
    has_more: bool = False
    query_time: float = 0.0
