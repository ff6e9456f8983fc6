"""
Archive catalog for AuditVault.

The catalog is the durable index of every archived batch. It lives in a
SQLite file next to the live store, never inside the archive objects, so that
a tampered object cannot also rewrite the facts it is checked against.

Tables:
    archive_batches:
        - id INTEGER PRIMARY KEY AUTOINCREMENT (insertion order)
        - archive_id TEXT UNIQUE
        - start_time_us / end_time_us INTEGER (inclusive occurred_at range)
        - year INTEGER (year of start_time, for partition statistics)
        - start_sequence / end_sequence INTEGER
        - event_count INTEGER
        - batch_digest / seed_hash / terminal_hash TEXT
        - bucket / storage_key / compression TEXT
        - row_group_size / size_bytes / uncompressed_bytes INTEGER
        - compliance_counts TEXT (JSON object flag -> count)
        - created_at_us / expires_at_us INTEGER

    legal_holds:
        - archive_id TEXT PRIMARY KEY
        - reason TEXT
        - placed_at_us INTEGER

    archive_operations:
        - operation_id TEXT PRIMARY KEY
        - operation_type TEXT (ARCHIVE, VERIFY, RESTORE, DELETE)
        - archive_id TEXT (nullable)
        - started_at_us / completed_at_us INTEGER
        - duration_seconds REAL
        - event_count INTEGER
        - events_per_second REAL
        - success INTEGER
        - error_message TEXT

Invariants:
    - record() is one INSERT in one transaction: a batch is fully visible or
      absent
    - Batch records are never updated; legal holds live in their own table
    - latest() follows insertion order, which is chain order

How to change safely:
    - Add columns with defaults; old rows must stay readable
    - Never reuse an archive_id
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from ..errors import CatalogError
from ..source.base import from_micros, to_micros

logger = logging.getLogger(__name__)

ARCHIVE_ID_PREFIX = "audit_"


def new_archive_id() -> str:
    """Generate a fresh archive identifier."""
    return f"{ARCHIVE_ID_PREFIX}{uuid.uuid4().hex}"


@dataclass(frozen=True)
class ArchiveBatch:
    """Catalog record of one archived batch.

    Attributes:
        archive_id: Unique identifier (audit_<uuid>)
        start_time: occurred_at of the earliest event (inclusive)
        end_time: occurred_at of the latest event (inclusive)
        start_sequence: First sequence in the batch
        end_sequence: Last sequence in the batch
        event_count: Number of events
        batch_digest: SHA-256 over the seed and every event hash
        bucket: Bucket (or local root) holding the object
        storage_key: Object key
        compression: Parquet codec name
        row_group_size: Rows per row group
        size_bytes: Stored (compressed) object size
        uncompressed_bytes: Sum of canonical event sizes
        created_at: When the batch was recorded
        seed_hash: Chain seed (previous terminal hash or genesis)
        terminal_hash: Hash of the last event
        compliance_counts: Compliance flag -> number of events carrying it
        expires_at: When the retention period ends
    """

    archive_id: str
    start_time: datetime
    end_time: datetime
    start_sequence: int
    end_sequence: int
    event_count: int
    batch_digest: str
    bucket: str
    storage_key: str
    compression: str
    row_group_size: int
    size_bytes: int
    uncompressed_bytes: int
    created_at: datetime
    seed_hash: str
    terminal_hash: str
    compliance_counts: dict[str, int] = field(default_factory=dict)
    expires_at: datetime | None = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Whether the batch's time range intersects [start, end]."""
        return self.start_time <= end and self.end_time >= start

    def contains_sequence(self, sequence: int) -> bool:
        return self.start_sequence <= sequence <= self.end_sequence


class OperationType(Enum):
    """Kinds of logged archive operations."""

    ARCHIVE = "ARCHIVE"
    VERIFY = "VERIFY"
    RESTORE = "RESTORE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class OperationRecord:
    """One entry of the append-only operations log.

    Attributes:
        operation_id: Unique identifier
        operation_type: What was done
        archive_id: Archive concerned (None for whole-run operations)
        started_at: Start time
        completed_at: End time
        duration_seconds: Elapsed wall time
        event_count: Events archived, verified, restored or deleted
        events_per_second: Throughput
        success: Whether the operation completed without error
        error_message: Failure cause, if any
    """

    operation_type: OperationType
    started_at: datetime
    completed_at: datetime
    event_count: int = 0
    success: bool = True
    archive_id: str | None = None
    error_message: str | None = None
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def events_per_second(self) -> float:
        duration = self.duration_seconds
        return self.event_count / duration if duration > 0 else 0.0


class ArchiveCatalog:
    """SQLite-backed catalog of archived batches.

    Thread safety:
        Each operation opens its own connection. SQLite serialises writers.

    Example:
        >>> catalog = ArchiveCatalog("/var/lib/auditvault/catalog.db")
        >>> await catalog.initialize()
        >>> await catalog.record(batch)
        >>> batch = await catalog.lookup(batch.archive_id)
    """

    def __init__(self, db_path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,  # Autocommit by default, explicit transactions
            )
        except (OSError, sqlite3.Error) as e:
            raise CatalogError(f"Failed to open catalog {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
        except sqlite3.Error as e:
            raise CatalogError(f"Catalog operation failed: {e}") from e
        finally:
            conn.close()

    async def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS archive_batches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    archive_id TEXT NOT NULL UNIQUE,
                    start_time_us INTEGER NOT NULL,
                    end_time_us INTEGER NOT NULL,
                    year INTEGER NOT NULL,
                    start_sequence INTEGER NOT NULL,
                    end_sequence INTEGER NOT NULL,
                    event_count INTEGER NOT NULL,
                    batch_digest TEXT NOT NULL,
                    bucket TEXT NOT NULL,
                    storage_key TEXT NOT NULL,
                    compression TEXT NOT NULL,
                    row_group_size INTEGER NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    uncompressed_bytes INTEGER NOT NULL,
                    created_at_us INTEGER NOT NULL,
                    seed_hash TEXT NOT NULL,
                    terminal_hash TEXT NOT NULL,
                    compliance_counts TEXT NOT NULL DEFAULT '{}',
                    expires_at_us INTEGER
                );

                CREATE INDEX IF NOT EXISTS idx_batches_time
                    ON archive_batches(start_time_us, end_time_us);
                CREATE INDEX IF NOT EXISTS idx_batches_sequence
                    ON archive_batches(start_sequence, end_sequence);
                CREATE INDEX IF NOT EXISTS idx_batches_year
                    ON archive_batches(year);
                CREATE INDEX IF NOT EXISTS idx_batches_expires
                    ON archive_batches(expires_at_us);

                CREATE TABLE IF NOT EXISTS legal_holds (
                    archive_id TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    placed_at_us INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS archive_operations (
                    operation_id TEXT PRIMARY KEY,
                    operation_type TEXT NOT NULL,
                    archive_id TEXT,
                    started_at_us INTEGER NOT NULL,
                    completed_at_us INTEGER NOT NULL,
                    duration_seconds REAL NOT NULL,
                    event_count INTEGER NOT NULL,
                    events_per_second REAL NOT NULL,
                    success INTEGER NOT NULL,
                    error_message TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_operations_type
                    ON archive_operations(operation_type, started_at_us);
            """)

    @staticmethod
    def _row_to_batch(row: sqlite3.Row) -> ArchiveBatch:
        expires = row["expires_at_us"]
        return ArchiveBatch(
            archive_id=row["archive_id"],
            start_time=from_micros(row["start_time_us"]),
            end_time=from_micros(row["end_time_us"]),
            start_sequence=row["start_sequence"],
            end_sequence=row["end_sequence"],
            event_count=row["event_count"],
            batch_digest=row["batch_digest"],
            bucket=row["bucket"],
            storage_key=row["storage_key"],
            compression=row["compression"],
            row_group_size=row["row_group_size"],
            size_bytes=row["size_bytes"],
            uncompressed_bytes=row["uncompressed_bytes"],
            created_at=from_micros(row["created_at_us"]),
            seed_hash=row["seed_hash"],
            terminal_hash=row["terminal_hash"],
            compliance_counts=json.loads(row["compliance_counts"]),
            expires_at=from_micros(expires) if expires is not None else None,
        )

    async def record(self, batch: ArchiveBatch) -> None:
        """Durably record a batch.

        Raises:
            CatalogError: If the archive id already exists or the write fails
        """
        expires = to_micros(batch.expires_at) if batch.expires_at is not None else None
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    """
                    INSERT INTO archive_batches (
                        archive_id, start_time_us, end_time_us, year,
                        start_sequence, end_sequence, event_count, batch_digest,
                        bucket, storage_key, compression, row_group_size,
                        size_bytes, uncompressed_bytes, created_at_us,
                        seed_hash, terminal_hash, compliance_counts, expires_at_us
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        batch.archive_id,
                        to_micros(batch.start_time),
                        to_micros(batch.end_time),
                        batch.start_time.year,
                        batch.start_sequence,
                        batch.end_sequence,
                        batch.event_count,
                        batch.batch_digest,
                        batch.bucket,
                        batch.storage_key,
                        batch.compression,
                        batch.row_group_size,
                        batch.size_bytes,
                        batch.uncompressed_bytes,
                        to_micros(batch.created_at),
                        batch.seed_hash,
                        batch.terminal_hash,
                        json.dumps(batch.compliance_counts, sort_keys=True),
                        expires,
                    ),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise CatalogError(f"Archive already recorded: {batch.archive_id}") from e
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.info(
            "Recorded archive batch",
            extra={
                "archive_id": batch.archive_id,
                "event_count": batch.event_count,
                "start_sequence": batch.start_sequence,
                "end_sequence": batch.end_sequence,
            },
        )

    async def lookup(self, archive_id: str) -> ArchiveBatch | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM archive_batches WHERE archive_id = ?", (archive_id,)
            ).fetchone()
        return self._row_to_batch(row) if row else None

    async def list_all(self) -> list[ArchiveBatch]:
        """All batches in insertion order."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM archive_batches ORDER BY id").fetchall()
        return [self._row_to_batch(row) for row in rows]

    async def list_range(self, start: datetime, end: datetime) -> list[ArchiveBatch]:
        """Batches whose time range overlaps [start, end], oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM archive_batches
                WHERE start_time_us <= ? AND end_time_us >= ?
                ORDER BY start_time_us, id
                """,
                (to_micros(end), to_micros(start)),
            ).fetchall()
        return [self._row_to_batch(row) for row in rows]

    async def latest(self) -> ArchiveBatch | None:
        """Most recently recorded batch; its terminal hash seeds the next one."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM archive_batches ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return self._row_to_batch(row) if row else None

    async def find_by_sequence(self, sequence: int) -> ArchiveBatch | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM archive_batches
                WHERE start_sequence <= ? AND end_sequence >= ?
                ORDER BY id DESC LIMIT 1
                """,
                (sequence, sequence),
            ).fetchone()
        return self._row_to_batch(row) if row else None

    async def list_expired(self, now: datetime) -> list[ArchiveBatch]:
        """Batches whose retention ended at or before now."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM archive_batches
                WHERE expires_at_us IS NOT NULL AND expires_at_us <= ?
                ORDER BY id
                """,
                (to_micros(now),),
            ).fetchall()
        return [self._row_to_batch(row) for row in rows]

    async def delete(self, archive_id: str) -> bool:
        """Remove a batch record (expiration only).

        Returns:
            True if a record was removed
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "DELETE FROM archive_batches WHERE archive_id = ?", (archive_id,)
                )
                conn.execute("DELETE FROM legal_holds WHERE archive_id = ?", (archive_id,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted archive record", extra={"archive_id": archive_id})
        return deleted

    # Legal holds

    async def place_legal_hold(self, archive_id: str, reason: str) -> None:
        """Protect an archive from expiration.

        Raises:
            CatalogError: If the archive is not in the catalog
        """
        if await self.lookup(archive_id) is None:
            raise CatalogError(f"Cannot place legal hold on unknown archive: {archive_id}")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO legal_holds (archive_id, reason, placed_at_us)
                VALUES (?, ?, ?)
                """,
                (archive_id, reason, to_micros(datetime.now(timezone.utc))),
            )
        logger.info("Placed legal hold", extra={"archive_id": archive_id, "reason": reason})

    async def release_legal_hold(self, archive_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM legal_holds WHERE archive_id = ?", (archive_id,))
        released = cursor.rowcount > 0
        if released:
            logger.info("Released legal hold", extra={"archive_id": archive_id})
        return released

    async def has_legal_hold(self, archive_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM legal_holds WHERE archive_id = ?", (archive_id,)
            ).fetchone()
        return row is not None

    # Operations log

    async def record_operation(self, record: OperationRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO archive_operations (
                    operation_id, operation_type, archive_id, started_at_us,
                    completed_at_us, duration_seconds, event_count,
                    events_per_second, success, error_message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.operation_id,
                    record.operation_type.value,
                    record.archive_id,
                    to_micros(record.started_at),
                    to_micros(record.completed_at),
                    record.duration_seconds,
                    record.event_count,
                    record.events_per_second,
                    int(record.success),
                    record.error_message,
                ),
            )

    async def list_operations(
        self,
        operation_type: OperationType | None = None,
        limit: int = 100,
    ) -> list[OperationRecord]:
        """Most recent operations first."""
        query = "SELECT * FROM archive_operations"
        params: list = []
        if operation_type is not None:
            query += " WHERE operation_type = ?"
            params.append(operation_type.value)
        query += " ORDER BY started_at_us DESC, rowid DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            OperationRecord(
                operation_id=row["operation_id"],
                operation_type=OperationType(row["operation_type"]),
                archive_id=row["archive_id"],
                started_at=from_micros(row["started_at_us"]),
                completed_at=from_micros(row["completed_at_us"]),
                event_count=row["event_count"],
                success=bool(row["success"]),
                error_message=row["error_message"],
            )
            for row in rows
        ]
