"""
Base protocol and types for the live audit event store.

This module defines the EventSource protocol that every live-store adapter
implements, along with the AuditEvent record and page type.

Invariants:
    - Pages are ordered by strictly increasing sequence
    - Pagination is cursor based (last returned sequence), never offset based,
      so concurrent writes to the live store cannot skip or repeat events
    - fetch_older_than() never deletes; mark_archived() is the only
      destructive call and runs after the catalog record is durable
    - mark_archived() removes exactly the sequences it is given; sequence
      gaps may hold younger events that were never fetched

How to change safely:
    - Protocol changes require updating every adapter
    - AuditEvent fields feed the canonical hash bytes; adding a field means
      a new canonical version
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol, runtime_checkable

# Upper bound for a single event payload.
MAX_PAYLOAD_BYTES = 1024 * 1024

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_micros(value: datetime) -> int:
    """Convert an aware datetime to integer microseconds since the epoch."""
    delta = value.astimezone(timezone.utc) - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    """Inverse of to_micros()."""
    return _EPOCH + timedelta(microseconds=value)


@dataclass(frozen=True)
class AuditEvent:
    """An immutable audit fact produced by the audit-logging pipeline.

    Attributes:
        sequence: Strictly increasing sequence key within the source
        occurred_at: When the audited action happened (UTC)
        actor: Who performed the action
        action: What was done
        resource: What it was done to
        payload: Opaque structured content (bytes)
        compliance_flags: Category tags such as "dsr" or "consent_change";
            only used for statistics
    """

    sequence: int
    occurred_at: datetime
    actor: str
    action: str
    resource: str
    payload: bytes = b""
    compliance_flags: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.sequence < 0:
            raise ValueError(f"sequence must be non-negative, got {self.sequence}")
        if self.occurred_at.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware")
        if len(self.payload) > MAX_PAYLOAD_BYTES:
            raise ValueError(
                f"payload of event {self.sequence} is {len(self.payload)} bytes, "
                f"limit is {MAX_PAYLOAD_BYTES}"
            )
        # Normalise so equality does not depend on the caller's container or tz
        object.__setattr__(self, "compliance_flags", frozenset(self.compliance_flags))
        object.__setattr__(self, "occurred_at", self.occurred_at.astimezone(timezone.utc))


@dataclass(frozen=True)
class EventPage:
    """One page of events returned by fetch_older_than().

    Attributes:
        events: Events in strictly increasing sequence order
        has_more: Whether more eligible events follow this page
    """

    events: list[AuditEvent]
    has_more: bool

    @property
    def next_cursor(self) -> int | None:
        """Cursor for the following page (last returned sequence)."""
        if not self.events:
            return None
        return self.events[-1].sequence

    def __len__(self) -> int:
        return len(self.events)


@runtime_checkable
class EventSource(Protocol):
    """Protocol for the live audit event store.

    Read contract:
        - fetch_older_than() returns events with occurred_at < cutoff and
          sequence > after_sequence, ascending, at most `limit`

    Write contract:
        - mark_archived() removes the given sequences after they were archived
        - insert_event() is the restore path back into the live store

    Example:
        >>> page = await source.fetch_older_than(cutoff, limit=1000)
        >>> while page.events:
        ...     handle(page.events)
        ...     page = await source.fetch_older_than(
        ...         cutoff, limit=1000, after_sequence=page.next_cursor
        ...     )
    """

    @abstractmethod
    async def fetch_older_than(
        self,
        cutoff: datetime,
        limit: int,
        after_sequence: int | None = None,
    ) -> EventPage:
        """Read one page of events older than the cutoff.

        Args:
            cutoff: Only events strictly older than this are returned
            limit: Maximum number of events in the page
            after_sequence: Cursor; only events with a larger sequence are returned

        Returns:
            EventPage with events in ascending sequence order

        Raises:
            EventSourceError: If the store cannot be read
        """
        ...

    @abstractmethod
    async def count_older_than(self, cutoff: datetime) -> int:
        """Count events older than the cutoff."""
        ...

    @abstractmethod
    async def mark_archived(self, sequences: list[int], archive_id: str) -> int:
        """Remove archived events from the live store.

        Event times need not rise with sequence, so a batch's sequence
        range can enclose live events that are not in the batch. Only the
        listed sequences are removed.

        Args:
            sequences: Sequences of the events written to the archive
            archive_id: Archive that now holds the events

        Returns:
            Number of events removed

        Raises:
            EventSourceError: If the store cannot be written
        """
        ...

    @abstractmethod
    async def insert_event(self, event: AuditEvent) -> None:
        """Insert a restored event into the live store.

        Raises:
            DuplicateEventError: If the sequence already exists
            EventSourceError: For other write failures
        """
        ...
