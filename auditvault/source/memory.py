"""
In-memory event source for testing.

This module provides a simple in-memory live store for:
- Unit tests
- Integration tests of the archiver
- Local development without a database

Invariants:
    - All data is lost on process exit
    - Provides the same ordering guarantees as the SQLite adapter

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the EventSource protocol
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..errors import DuplicateEventError, EventSourceError
from .base import AuditEvent, EventPage

logger = logging.getLogger(__name__)


class InMemoryEventSource:
    """In-memory implementation of EventSource for testing.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Testing helpers:
        fail_next_mark / fail_inserts inject failures, and fetch_calls,
        mark_calls record how the archiver used the source.

    Example:
        >>> source = InMemoryEventSource()
        >>> source.add_events(events)
        >>> page = await source.fetch_older_than(cutoff, limit=100)
    """

    def __init__(self, events: list[AuditEvent] | None = None) -> None:
        self._events: dict[int, AuditEvent] = {}
        self._archived: dict[int, str] = {}
        self._lock = asyncio.Lock()

        self.fetch_calls = 0
        self.mark_calls: list[tuple[tuple[int, ...], str]] = []
        self.fail_next_mark = False
        self.fail_inserts: set[int] = set()

        if events:
            self.add_events(events)

    def add_events(self, events: list[AuditEvent]) -> None:
        """Add events directly (test setup)."""
        for event in events:
            if event.sequence in self._events:
                raise DuplicateEventError(event.sequence)
            self._events[event.sequence] = event

    def all_events(self) -> list[AuditEvent]:
        """All events currently in the live store, by sequence."""
        return [self._events[seq] for seq in sorted(self._events)]

    def archived_into(self, sequence: int) -> str | None:
        """Archive id an event was removed into, if any."""
        return self._archived.get(sequence)

    async def fetch_older_than(
        self,
        cutoff: datetime,
        limit: int,
        after_sequence: int | None = None,
    ) -> EventPage:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        async with self._lock:
            self.fetch_calls += 1
            eligible = [
                self._events[seq]
                for seq in sorted(self._events)
                if (after_sequence is None or seq > after_sequence)
                and self._events[seq].occurred_at < cutoff
            ]

        return EventPage(events=eligible[:limit], has_more=len(eligible) > limit)

    async def count_older_than(self, cutoff: datetime) -> int:
        async with self._lock:
            return sum(1 for e in self._events.values() if e.occurred_at < cutoff)

    async def mark_archived(self, sequences: list[int], archive_id: str) -> int:
        async with self._lock:
            self.mark_calls.append((tuple(sequences), archive_id))
            if self.fail_next_mark:
                self.fail_next_mark = False
                raise EventSourceError("Injected mark_archived failure")

            removed = [seq for seq in sequences if seq in self._events]
            for seq in removed:
                del self._events[seq]
                self._archived[seq] = archive_id

        logger.debug(
            "Marked events archived",
            extra={"archive_id": archive_id, "removed": len(removed)},
        )
        return len(removed)

    async def insert_event(self, event: AuditEvent) -> None:
        async with self._lock:
            if event.sequence in self.fail_inserts:
                raise EventSourceError(f"Injected insert failure for sequence {event.sequence}")
            if event.sequence in self._events:
                raise DuplicateEventError(event.sequence)
            self._events[event.sequence] = event
            self._archived.pop(event.sequence, None)
