"""
SQLite live audit event store.

This adapter reads eligible events from a SQLite audit table and performs the
destructive removal once a batch is safely archived.

Invariants:
    - Reads use a sequence cursor and ORDER BY sequence
    - mark_archived() deletes exactly the archived sequences and logs their
      range in a single transaction
    - insert_event() never overwrites an existing sequence

Table schema:
    audit_events:
        - sequence INTEGER PRIMARY KEY
        - occurred_at_us INTEGER (Unix microseconds, UTC)
        - actor TEXT
        - action TEXT
        - resource TEXT
        - payload BLOB
        - compliance_flags TEXT (JSON list)

    archived_ranges:
        - start_sequence INTEGER
        - end_sequence INTEGER
        - archive_id TEXT
        - removed INTEGER
        - archived_at INTEGER (Unix ms)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from ..errors import DuplicateEventError, EventSourceError
from .base import AuditEvent, EventPage, from_micros, to_micros

logger = logging.getLogger(__name__)


class SQLiteEventSource:
    """EventSource backed by a single SQLite database file.

    Thread safety:
        Each operation opens its own connection. SQLite handles concurrent
        writers from the audit pipeline via WAL mode.

    Example:
        >>> source = SQLiteEventSource("/var/lib/auditvault/audit_events.db")
        >>> await source.initialize()
        >>> page = await source.fetch_older_than(cutoff, limit=1000)
    """

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except sqlite3.Error as e:
            raise EventSourceError(f"Failed to open event store {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            yield conn
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    sequence INTEGER PRIMARY KEY,
                    occurred_at_us INTEGER NOT NULL,
                    actor TEXT NOT NULL,
                    action TEXT NOT NULL,
                    resource TEXT NOT NULL,
                    payload BLOB NOT NULL,
                    compliance_flags TEXT NOT NULL DEFAULT '[]'
                );

                CREATE INDEX IF NOT EXISTS idx_audit_events_occurred
                    ON audit_events(occurred_at_us, sequence);

                CREATE TABLE IF NOT EXISTS archived_ranges (
                    start_sequence INTEGER NOT NULL,
                    end_sequence INTEGER NOT NULL,
                    archive_id TEXT NOT NULL,
                    removed INTEGER NOT NULL,
                    archived_at INTEGER NOT NULL
                );
            """)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> AuditEvent:
        return AuditEvent(
            sequence=row["sequence"],
            occurred_at=from_micros(row["occurred_at_us"]),
            actor=row["actor"],
            action=row["action"],
            resource=row["resource"],
            payload=bytes(row["payload"]),
            compliance_flags=frozenset(json.loads(row["compliance_flags"])),
        )

    @staticmethod
    def _event_params(event: AuditEvent) -> tuple:
        return (
            event.sequence,
            to_micros(event.occurred_at),
            event.actor,
            event.action,
            event.resource,
            event.payload,
            json.dumps(sorted(event.compliance_flags)),
        )

    async def fetch_older_than(
        self,
        cutoff: datetime,
        limit: int,
        after_sequence: int | None = None,
    ) -> EventPage:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        cursor_seq = -1 if after_sequence is None else after_sequence
        try:
            with self._connect() as conn:
                # One extra row tells us whether another page follows.
                rows = conn.execute(
                    """
                    SELECT * FROM audit_events
                    WHERE occurred_at_us < ? AND sequence > ?
                    ORDER BY sequence ASC
                    LIMIT ?
                    """,
                    (to_micros(cutoff), cursor_seq, limit + 1),
                ).fetchall()
        except sqlite3.Error as e:
            raise EventSourceError(f"Failed to read audit events: {e}") from e

        events = [self._row_to_event(row) for row in rows[:limit]]
        return EventPage(events=events, has_more=len(rows) > limit)

    async def count_older_than(self, cutoff: datetime) -> int:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM audit_events WHERE occurred_at_us < ?",
                    (to_micros(cutoff),),
                ).fetchone()
        except sqlite3.Error as e:
            raise EventSourceError(f"Failed to count audit events: {e}") from e
        return row[0]

    async def mark_archived(self, sequences: list[int], archive_id: str) -> int:
        if not sequences:
            return 0
        start_sequence, end_sequence = min(sequences), max(sequences)
        try:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = conn.executemany(
                        "DELETE FROM audit_events WHERE sequence = ?",
                        [(sequence,) for sequence in sequences],
                    )
                    removed = cursor.rowcount
                    conn.execute(
                        """
                        INSERT INTO archived_ranges
                            (start_sequence, end_sequence, archive_id, removed, archived_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (start_sequence, end_sequence, archive_id, removed, int(time.time() * 1000)),
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            raise EventSourceError(
                f"Failed to mark {len(sequences)} events in "
                f"{start_sequence}-{end_sequence} archived: {e}"
            ) from e

        logger.info(
            "Removed archived events from live store",
            extra={
                "archive_id": archive_id,
                "start_sequence": start_sequence,
                "end_sequence": end_sequence,
                "removed": removed,
            },
        )
        return removed

    async def insert_event(self, event: AuditEvent) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events
                        (sequence, occurred_at_us, actor, action, resource, payload,
                         compliance_flags)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._event_params(event),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateEventError(event.sequence) from e
        except sqlite3.Error as e:
            raise EventSourceError(f"Failed to insert event {event.sequence}: {e}") from e

    async def insert_events(self, events: list[AuditEvent]) -> None:
        """Bulk insert events in one transaction (producer side, used by tests and tooling)."""
        try:
            with self._connect() as conn:
                conn.execute("BEGIN")
                try:
                    conn.executemany(
                        """
                        INSERT INTO audit_events
                            (sequence, occurred_at_us, actor, action, resource, payload,
                             compliance_flags)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        [self._event_params(e) for e in events],
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        except sqlite3.IntegrityError as e:
            raise EventSourceError(f"Duplicate sequence in bulk insert: {e}") from e
        except sqlite3.Error as e:
            raise EventSourceError(f"Failed to insert events: {e}") from e

    async def count(self) -> int:
        """Total events currently in the live store."""
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM audit_events").fetchone()[0]
