"""
Audit event archiver.

The Archiver moves aging audit events from the live store into tamper-evident
Parquet objects and can later prove, or disprove, that an archive is intact.

Archive flow (one page at a time):
    1. Fetch up to batch_size events older than the cutoff
    2. Chain them, seeded with the previous batch's terminal hash
    3. Encode to Parquet
    4. Multipart upload to:
       <prefix>/year=YYYY/month=MM/day=DD/<archive_id>_<start>-<end>.parquet
    5. Record the batch in the catalog
    6. Remove the events from the live store

Invariants:
    - Events leave the live store only after their batch record is durable,
      and only the events written to that batch leave it
    - A page that fails in steps 4-6 stops the run; earlier pages stay valid
    - The chain seed is always the terminal hash of the last recorded batch,
      so the chain spans every run
    - A dry run writes nothing: no objects, no catalog rows, no source changes
    - Verification never trusts the object alone; every check is against the
      catalog record

How to change safely:
    - Never change the object key layout for existing archives
    - Restore must keep refusing archives that fail verification
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from datetime import datetime, timedelta, timezone

from ..catalog.catalog import (
    ArchiveBatch,
    ArchiveCatalog,
    OperationRecord,
    OperationType,
    new_archive_id,
)
from ..chain.hashchain import (
    GENESIS_HASH,
    ChainedEvent,
    build_chain,
    compute_batch_digest,
    uncompressed_size,
    verify_chain,
)
from ..codec.columnar import FILE_EXTENSION, ColumnarEncodeError, decode, encode
from ..config import ArchiveConfig
from ..errors import (
    ArchiveError,
    ArchivedEventNotFoundError,
    ArchiveNotFoundError,
    CatalogError,
    EventSourceError,
    OperationCancelledError,
    StorageError,
)
from ..source.base import AuditEvent, EventSource
from ..storage.base import ObjectStore, check_cancelled
from .results import (
    ArchiveQuery,
    ArchiveQueryResult,
    ArchiveRunResult,
    ArchiveStats,
    IntegrityVerificationResult,
    RestoreResult,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_storage_key(
    prefix: str,
    archive_id: str,
    first_event_time: datetime,
    start_sequence: int,
    end_sequence: int,
) -> str:
    """Deterministic object key for a batch, partitioned by its first event's date."""
    day = first_event_time.astimezone(timezone.utc)
    key = (
        f"year={day:%Y}/month={day:%m}/day={day:%d}/"
        f"{archive_id}_{start_sequence}-{end_sequence}{FILE_EXTENSION}"
    )
    prefix = prefix.strip("/")
    return f"{prefix}/{key}" if prefix else key


class Archiver:
    """Archives, verifies and restores audit event batches.

    Attributes:
        source: Live audit event store
        store: Object storage for archive files
        catalog: Archive catalog
        config: Archival settings
        bucket: Bucket name recorded with every batch
        prefix: Key prefix for archive objects

    Example:
        >>> archiver = Archiver(source, store, catalog, config.archive,
        ...                     bucket=config.bucket, prefix=config.prefix)
        >>> result = await archiver.archive(cutoff=now - timedelta(days=90))
        >>> verification = await archiver.verify_integrity(result.batches[0].archive_id)
    """

    def __init__(
        self,
        source: EventSource,
        store: ObjectStore,
        catalog: ArchiveCatalog,
        config: ArchiveConfig | None = None,
        bucket: str = "",
        prefix: str = "audit",
    ) -> None:
        self.source = source
        self.store = store
        self.catalog = catalog
        self.config = config or ArchiveConfig()
        self.bucket = bucket
        self.prefix = prefix

        self._archive_lock = asyncio.Lock()

    @property
    def _timeout(self) -> float:
        return self.config.timeout_seconds

    # Archive

    async def archive(
        self,
        cutoff: datetime,
        batch_size: int | None = None,
        dry_run: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> ArchiveRunResult:
        """Archive every event older than the cutoff.

        Args:
            cutoff: Events with occurred_at strictly before this are archived
            batch_size: Events per batch (defaults to config.batch_size)
            dry_run: Compute batches without uploading or writing anything
            cancel: Stops the run between pages or during an upload

        Returns:
            ArchiveRunResult; a page failure is reported in result.error
            together with the count of pages committed before it
        """
        size = batch_size if batch_size is not None else self.config.batch_size
        if size <= 0:
            raise ValueError(f"batch_size must be positive, got {size}")

        async with self._archive_lock:
            started_at = _utcnow()
            start = time.monotonic()
            result = ArchiveRunResult(dry_run=dry_run)

            try:
                await self._archive_pages(cutoff, size, dry_run, cancel, result)
            finally:
                result.elapsed_seconds = time.monotonic() - start

            logger.info(
                "Archive run finished",
                extra={
                    "events_archived": result.events_archived,
                    "batches": len(result.batches),
                    "elapsed_seconds": round(result.elapsed_seconds, 3),
                    "events_per_second": round(result.events_per_second, 1),
                    "dry_run": dry_run,
                    "cancelled": result.cancelled,
                    "error": result.error,
                },
            )

            if not dry_run:
                await self._log_operation(
                    OperationType.ARCHIVE,
                    started_at,
                    event_count=result.events_archived,
                    error=result.error or ("cancelled" if result.cancelled else None),
                )
            return result

    async def _archive_pages(
        self,
        cutoff: datetime,
        batch_size: int,
        dry_run: bool,
        cancel: asyncio.Event | None,
        result: ArchiveRunResult,
    ) -> None:
        try:
            latest = await self.catalog.latest()
        except CatalogError as e:
            result.error = f"could not read the previous terminal hash: {e}"
            logger.error(f"Archive run aborted: {e}")
            return
        seed = latest.terminal_hash if latest else GENESIS_HASH
        cursor: int | None = None

        if dry_run:
            try:
                eligible = await self.source.count_older_than(cutoff)
            except EventSourceError as e:
                result.error = f"could not count eligible events: {e}"
                logger.error(f"Dry run aborted: {e}")
                return
            logger.info(
                "Dry run: nothing will be uploaded or removed",
                extra={"eligible_events": eligible, "cutoff": cutoff.isoformat()},
            )

        while True:
            if cancel is not None and cancel.is_set():
                result.cancelled = True
                logger.warning("Archive run cancelled between pages")
                return

            try:
                page = await self.source.fetch_older_than(
                    cutoff, batch_size, after_sequence=cursor
                )
            except EventSourceError as e:
                result.error = f"fetch after sequence {cursor or 0} failed: {e}"
                logger.error(f"Failed to fetch events: {e}", extra={"after_sequence": cursor})
                return
            if not page.events:
                return

            chained, terminal = build_chain(seed, page.events)
            archive_id = new_archive_id()

            if dry_run:
                batch = self._describe_batch(archive_id, chained, seed, terminal, size_bytes=0)
            else:
                try:
                    batch = await self._commit_page(archive_id, chained, seed, terminal, cancel)
                except OperationCancelledError:
                    result.cancelled = True
                    logger.warning("Archive run cancelled during upload")
                    return
                except (StorageError, CatalogError, ColumnarEncodeError) as e:
                    result.error = f"page starting at sequence {chained[0].sequence}: {e}"
                    logger.error(f"Archive page failed: {e}", extra={"archive_id": archive_id})
                    return

            result.batches.append(batch)
            result.events_archived += batch.event_count
            seed = terminal
            cursor = page.next_cursor

            if not dry_run:
                try:
                    await self.source.mark_archived([c.sequence for c in chained], archive_id)
                except EventSourceError as e:
                    # The batch is archived and recorded; its events simply stay live too.
                    result.error = f"archived {archive_id} but could not remove its events: {e}"
                    logger.error(
                        f"Failed to remove archived events: {e}",
                        extra={"archive_id": archive_id},
                    )
                    return

            if not page.has_more:
                return

    def _describe_batch(
        self,
        archive_id: str,
        chained: list[ChainedEvent],
        seed: str,
        terminal: str,
        size_bytes: int,
    ) -> ArchiveBatch:
        events = [c.event for c in chained]
        created_at = _utcnow()
        compliance = Counter(flag for event in events for flag in event.compliance_flags)
        return ArchiveBatch(
            archive_id=archive_id,
            start_time=min(e.occurred_at for e in events),
            end_time=max(e.occurred_at for e in events),
            start_sequence=events[0].sequence,
            end_sequence=events[-1].sequence,
            event_count=len(events),
            batch_digest=compute_batch_digest(seed, chained),
            bucket=self.bucket,
            storage_key=build_storage_key(
                self.prefix, archive_id, events[0].occurred_at,
                events[0].sequence, events[-1].sequence,
            ),
            compression=self.config.compression.value,
            row_group_size=self.config.row_group_size,
            size_bytes=size_bytes,
            uncompressed_bytes=uncompressed_size(chained),
            created_at=created_at,
            seed_hash=seed,
            terminal_hash=terminal,
            compliance_counts=dict(sorted(compliance.items())),
            expires_at=created_at + timedelta(days=self.config.retention_days),
        )

    async def _commit_page(
        self,
        archive_id: str,
        chained: list[ChainedEvent],
        seed: str,
        terminal: str,
        cancel: asyncio.Event | None,
    ) -> ArchiveBatch:
        data = encode(
            chained,
            compression=self.config.compression,
            row_group_size=self.config.row_group_size,
            metadata={"archive_id": archive_id, "seed_hash": seed, "terminal_hash": terminal},
        )
        draft = self._describe_batch(archive_id, chained, seed, terminal, size_bytes=len(data))

        await self.store.upload(
            draft.storage_key,
            data,
            part_size=self.config.part_size,
            max_concurrency=self.config.max_concurrency,
            timeout=self._timeout,
            metadata={
                "archive-id": archive_id,
                "event-count": str(draft.event_count),
                "batch-digest": draft.batch_digest,
            },
            cancel=cancel,
        )

        try:
            await self.catalog.record(draft)
        except CatalogError:
            await self._discard_object(draft.storage_key, archive_id)
            raise

        logger.info(
            "Archived batch",
            extra={
                "archive_id": archive_id,
                "event_count": draft.event_count,
                "size_bytes": draft.size_bytes,
                "key": draft.storage_key,
            },
        )
        return draft

    async def _discard_object(self, key: str, archive_id: str) -> None:
        try:
            await self.store.delete(key, timeout=self._timeout)
        except StorageError as e:
            logger.error(
                f"Failed to delete unrecorded archive object: {e}",
                extra={"archive_id": archive_id, "key": key},
            )

    # Verification

    async def verify_integrity(
        self,
        archive_id: str,
        cancel: asyncio.Event | None = None,
    ) -> IntegrityVerificationResult:
        """Check an archive against its catalog record.

        Raises:
            ArchiveNotFoundError: If the archive is not in the catalog
            OperationCancelledError: If cancelled before the download
        """
        started_at = _utcnow()
        batch = await self._require(archive_id)
        verification, _ = await self._verify_batch(batch, cancel)

        await self._log_operation(
            OperationType.VERIFY,
            started_at,
            event_count=verification.event_count,
            archive_id=archive_id,
            error=None if verification.is_valid else "; ".join(verification.errors),
        )
        return verification

    async def _require(self, archive_id: str) -> ArchiveBatch:
        batch = await self.catalog.lookup(archive_id)
        if batch is None:
            raise ArchiveNotFoundError(archive_id)
        return batch

    async def _verify_batch(
        self,
        batch: ArchiveBatch,
        cancel: asyncio.Event | None,
    ) -> tuple[IntegrityVerificationResult, list[ChainedEvent]]:
        archive_id = batch.archive_id
        result = IntegrityVerificationResult(archive_id=archive_id)

        check_cancelled(cancel, batch.storage_key)
        try:
            data = await self.store.download(batch.storage_key, timeout=self._timeout)
        except StorageError as e:
            result.errors.append(f"{archive_id}: parquet check failed: download error: {e}")
            result.verified_at = _utcnow()
            self._log_verification(result)
            return result, []

        decoded = decode(data)
        result.event_count = len(decoded.events)
        result.parquet_valid = decoded.ok
        for error in decoded.errors:
            result.errors.append(f"{archive_id}: parquet check failed: {error}")

        if decoded.ok:
            chain = verify_chain(batch.seed_hash, decoded.events, batch.terminal_hash)
            result.hash_chain_valid = chain.valid
            result.first_divergent_index = chain.first_divergent_index
            if not chain.valid:
                if chain.first_divergent_index == len(decoded.events):
                    detail = "terminal hash does not match catalog"
                else:
                    detail = f"first divergent event at index {chain.first_divergent_index}"
                result.errors.append(f"{archive_id}: hash chain check failed: {detail}")

            metadata_errors = self._compare_metadata(batch, decoded.events, decoded.metadata)
            result.metadata_valid = not metadata_errors
            result.errors.extend(
                f"{archive_id}: metadata check failed: {error}" for error in metadata_errors
            )

        result.is_valid = result.parquet_valid and result.hash_chain_valid and result.metadata_valid
        result.verified_at = _utcnow()
        self._log_verification(result)
        return result, decoded.events

    @staticmethod
    def _compare_metadata(
        batch: ArchiveBatch,
        events: list[ChainedEvent],
        file_metadata: dict[str, str],
    ) -> list[str]:
        if not events:
            return [f"object holds no events, catalog records {batch.event_count}"]

        errors = []
        if len(events) != batch.event_count:
            errors.append(f"event count {len(events)} != catalog {batch.event_count}")

        first, last = events[0].sequence, events[-1].sequence
        if (first, last) != (batch.start_sequence, batch.end_sequence):
            errors.append(
                f"sequence range {first}-{last} != catalog "
                f"{batch.start_sequence}-{batch.end_sequence}"
            )

        start = min(c.event.occurred_at for c in events)
        end = max(c.event.occurred_at for c in events)
        if (start, end) != (batch.start_time, batch.end_time):
            errors.append(
                f"time range {start.isoformat()}..{end.isoformat()} != catalog "
                f"{batch.start_time.isoformat()}..{batch.end_time.isoformat()}"
            )

        digest = compute_batch_digest(batch.seed_hash, events)
        if digest != batch.batch_digest:
            errors.append("batch digest does not match catalog")

        stored_id = file_metadata.get("archive_id")
        if stored_id != batch.archive_id:
            errors.append(f"object belongs to archive {stored_id!r}")
        return errors

    @staticmethod
    def _log_verification(result: IntegrityVerificationResult) -> None:
        extra = {
            "archive_id": result.archive_id,
            "is_valid": result.is_valid,
            "parquet_valid": result.parquet_valid,
            "hash_chain_valid": result.hash_chain_valid,
            "metadata_valid": result.metadata_valid,
            "event_count": result.event_count,
        }
        if result.is_valid:
            logger.info("Archive verified", extra=extra)
        else:
            logger.warning(f"Archive failed verification: {result.errors}", extra=extra)

    # Restore

    async def restore(
        self,
        archive_id: str,
        dry_run: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> RestoreResult:
        """Verify an archive and re-insert its events into the live store.

        Nothing is inserted unless verification passes. Individual insert
        failures are collected in result.errors without stopping the restore.

        Raises:
            ArchiveNotFoundError: If the archive is not in the catalog
        """
        started_at = _utcnow()
        start = time.monotonic()
        batch = await self._require(archive_id)
        verification, events = await self._verify_batch(batch, cancel)
        result = RestoreResult(archive_id=archive_id, verification=verification, dry_run=dry_run)

        if not verification.is_valid:
            result.errors.extend(verification.errors)
            logger.error("Refusing to restore archive that failed verification",
                         extra={"archive_id": archive_id})
        elif dry_run:
            result.events_would_restore = len(events)
            logger.info(
                "Dry run: archive would be restored",
                extra={"archive_id": archive_id, "events_would_restore": len(events)},
            )
        else:
            await self._insert_events(archive_id, events, cancel, result)

        result.restore_time = time.monotonic() - start

        if not dry_run:
            await self._log_operation(
                OperationType.RESTORE,
                started_at,
                event_count=result.events_restored,
                archive_id=archive_id,
                error="; ".join(result.errors) or None,
            )
        return result

    async def _insert_events(
        self,
        archive_id: str,
        events: list[ChainedEvent],
        cancel: asyncio.Event | None,
        result: RestoreResult,
    ) -> None:
        for chained in events:
            if cancel is not None and cancel.is_set():
                result.errors.append(
                    f"{archive_id}: restore cancelled after {result.events_restored} events"
                )
                break
            try:
                await self.source.insert_event(chained.event)
            except EventSourceError as e:
                result.errors.append(f"{archive_id}: event {chained.sequence}: {e}")
                continue
            result.events_restored += 1

        logger.info(
            "Restored archive",
            extra={
                "archive_id": archive_id,
                "events_restored": result.events_restored,
                "errors": len(result.errors),
            },
        )

    # Statistics and lookups

    async def stats(self) -> ArchiveStats:
        """Aggregate statistics over every catalogued archive."""
        batches = await self.catalog.list_all()
        stats = ArchiveStats()
        if not batches:
            return stats

        uncompressed = 0
        by_year: Counter[int] = Counter()
        by_flag: Counter[str] = Counter()
        for batch in batches:
            stats.total_events += batch.event_count
            stats.total_size_bytes += batch.size_bytes
            uncompressed += batch.uncompressed_bytes
            by_year[batch.start_time.year] += 1
            by_flag.update(batch.compliance_counts)

        stats.total_archives = len(batches)
        stats.average_size_bytes = stats.total_size_bytes / stats.total_archives
        if stats.total_size_bytes:
            stats.compression_ratio = uncompressed / stats.total_size_bytes
        stats.oldest_archive = min(b.start_time for b in batches)
        stats.newest_archive = max(b.end_time for b in batches)
        stats.archives_by_year = dict(sorted(by_year.items()))
        stats.events_by_compliance = dict(sorted(by_flag.items()))
        return stats

    async def list_archives(self, start: datetime, end: datetime) -> list[ArchiveBatch]:
        """Catalogued archives whose time range overlaps [start, end]."""
        return await self.catalog.list_range(start, end)

    async def query_archive(
        self,
        query: ArchiveQuery,
        cancel: asyncio.Event | None = None,
    ) -> ArchiveQueryResult:
        """Search archived events.

        Archives that cannot be downloaded or decoded are skipped and counted
        in archives_failed.
        """
        start = time.monotonic()
        result = ArchiveQueryResult()

        for batch in await self.catalog.list_range(query.start_time, query.end_time):
            check_cancelled(cancel, batch.storage_key)
            events = await self._load_events(batch)
            if events is None:
                result.archives_failed += 1
                continue
            result.archives_scanned += 1

            for chained in events:
                if not query.matches(chained.event):
                    continue
                if query.limit and len(result.events) >= query.limit:
                    result.has_more = True
                    break
                result.events.append(chained.event)
            if result.has_more:
                break

        result.query_time = time.monotonic() - start
        logger.info(
            "Archive query finished",
            extra={
                "matches": len(result.events),
                "archives_scanned": result.archives_scanned,
                "archives_failed": result.archives_failed,
                "has_more": result.has_more,
            },
        )
        return result

    async def _load_events(self, batch: ArchiveBatch) -> list[ChainedEvent] | None:
        try:
            data = await self.store.download(batch.storage_key, timeout=self._timeout)
        except StorageError as e:
            logger.warning(f"Skipping unreadable archive: {e}", extra={"archive_id": batch.archive_id})
            return None
        decoded = decode(data)
        if not decoded.ok:
            logger.warning(
                f"Skipping undecodable archive: {decoded.errors}",
                extra={"archive_id": batch.archive_id},
            )
            return None
        return decoded.events

    async def get_archived_event(self, sequence: int) -> AuditEvent:
        """Fetch a single archived event by sequence.

        Raises:
            ArchivedEventNotFoundError: If no archive holds the sequence
            ArchiveError: If the archive holding it cannot be read
        """
        batch = await self.catalog.find_by_sequence(sequence)
        if batch is None:
            raise ArchivedEventNotFoundError(sequence)

        events = await self._load_events(batch)
        if events is None:
            raise ArchiveError(f"Archive {batch.archive_id} holding sequence {sequence} is unreadable")
        for chained in events:
            if chained.sequence == sequence:
                return chained.event
        raise ArchivedEventNotFoundError(sequence, batch.archive_id)

    # Retention

    async def delete_expired(
        self,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> int:
        """Delete archives past their retention period.

        Archives under legal hold are kept. The object is deleted before its
        catalog record; a failed object delete keeps the record so the next
        run retries it.

        Returns:
            Number of archives deleted
        """
        now = now or _utcnow()
        deleted = 0

        for batch in await self.catalog.list_expired(now):
            if cancel is not None and cancel.is_set():
                logger.warning("Expiration cancelled", extra={"deleted": deleted})
                break
            if await self.catalog.has_legal_hold(batch.archive_id):
                logger.info("Skipping archive under legal hold",
                            extra={"archive_id": batch.archive_id})
                continue

            started_at = _utcnow()
            try:
                await self.store.delete(batch.storage_key, timeout=self._timeout)
            except StorageError as e:
                logger.error(f"Failed to delete expired archive: {e}",
                             extra={"archive_id": batch.archive_id})
                await self._log_operation(
                    OperationType.DELETE, started_at, archive_id=batch.archive_id, error=str(e)
                )
                continue

            await self.catalog.delete(batch.archive_id)
            deleted += 1
            await self._log_operation(
                OperationType.DELETE,
                started_at,
                event_count=batch.event_count,
                archive_id=batch.archive_id,
            )

        logger.info("Expired archives deleted", extra={"deleted": deleted})
        return deleted

    async def _log_operation(
        self,
        operation_type: OperationType,
        started_at: datetime,
        event_count: int = 0,
        archive_id: str | None = None,
        error: str | None = None,
    ) -> None:
        record = OperationRecord(
            operation_type=operation_type,
            started_at=started_at,
            completed_at=_utcnow(),
            event_count=event_count,
            success=error is None,
            archive_id=archive_id,
            error_message=error,
        )
        try:
            await self.catalog.record_operation(record)
        except CatalogError as e:
            logger.warning(f"Failed to record {operation_type.value} operation: {e}")
