"""
Integration tests for the Archiver with in-memory source, local object
store and SQLite catalog.

Tests cover:
- Multi-batch archiving and chain continuity
- Verification of intact, truncated and tampered archives
- Restore, including partial failures and dry runs
- Dry-run archiving and partial-failure safety
- Statistics, queries, lookups and retention
"""

import asyncio
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from auditvault.archive.archiver import Archiver, build_storage_key
from auditvault.archive.results import ArchiveQuery
from auditvault.catalog.catalog import ArchiveCatalog, OperationType
from auditvault.chain.hashchain import GENESIS_HASH, ChainedEvent
from auditvault.codec.columnar import decode, encode
from auditvault.config import ArchiveConfig, Compression, StorageProvider
from auditvault.errors import (
    ArchivedEventNotFoundError,
    ArchiveNotFoundError,
    CatalogError,
    EventSourceError,
    StorageError,
)
from auditvault.source.memory import InMemoryEventSource
from auditvault.source.sqlite import SQLiteEventSource
from auditvault.storage.base import RetryPolicy
from auditvault.storage.local import LocalObjectStore

NO_WAIT = RetryPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=0.0)


class FailingUploadStore(LocalObjectStore):
    """Local store whose n-th upload fails on its second part."""

    def __init__(self, root, fail_on_upload):
        super().__init__(root, retry=NO_WAIT)
        self.fail_on_upload = fail_on_upload
        self.uploads = 0

    async def upload(self, key, data, **kwargs):
        self.uploads += 1
        self.fail_parts = {2} if self.uploads == self.fail_on_upload else set()
        return await super().upload(key, data, **kwargs)


class FailingRecordCatalog(ArchiveCatalog):
    """Catalog that refuses to record batches."""

    async def record(self, batch):
        raise CatalogError("disk full")


class FailingFetchSource(InMemoryEventSource):
    """Raises on the n-th page fetch."""

    def __init__(self, events, fail_on_fetch):
        super().__init__(events)
        self.fail_on_fetch = fail_on_fetch

    async def fetch_older_than(self, cutoff, limit, after_sequence=None):
        if self.fetch_calls + 1 == self.fail_on_fetch:
            self.fetch_calls += 1
            raise EventSourceError("connection reset")
        return await super().fetch_older_than(cutoff, limit, after_sequence=after_sequence)


class UnreadableCatalog(ArchiveCatalog):
    """Catalog whose latest batch cannot be read."""

    async def latest(self):
        raise CatalogError("database is locked")


class CancellingSource(InMemoryEventSource):
    """Sets the cancel signal once the first batch is removed."""

    def __init__(self, events, cancel):
        super().__init__(events)
        self.cancel = cancel

    async def mark_archived(self, sequences, archive_id):
        removed = await super().mark_archived(sequences, archive_id)
        self.cancel.set()
        return removed


class Env:
    """Temporary bucket and catalog for one test."""

    def __init__(self, root: Path, config: ArchiveConfig):
        self.root = root
        self.config = config
        self.store = LocalObjectStore(root / "objects", retry=NO_WAIT)
        self.catalog = ArchiveCatalog(root / "catalog.db")
        asyncio.run(self.catalog.initialize())

    def archiver(self, source, store=None, catalog=None):
        return Archiver(
            source,
            store or self.store,
            catalog or self.catalog,
            self.config,
            bucket="audit-archive-test",
            prefix="audit",
        )

    def object_files(self):
        return sorted((self.root / "objects").rglob("*.parquet"))

    def object_path(self, batch):
        return self.root / "objects" / batch.storage_key


class TestArchive:
    """Tests for Archiver.archive()."""

    @pytest.fixture
    def env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Env(
                Path(tmpdir),
                ArchiveConfig(
                    provider=StorageProvider.LOCAL,
                    batch_size=1000,
                    part_size=16 * 1024,
                    max_concurrency=4,
                    timeout_seconds=10,
                ),
            )

    @pytest.mark.asyncio
    async def test_batches_chain_from_genesis(self, env, make_events, cutoff):
        """2500 events in batches of 1000 give 1000/1000/500, chained together."""
        source = InMemoryEventSource(make_events(2500))

        result = await env.archiver(source).archive(cutoff)

        assert result.success
        assert result.events_archived == 2500
        assert [b.event_count for b in result.batches] == [1000, 1000, 500]
        assert result.batches[0].seed_hash == GENESIS_HASH
        assert result.batches[1].seed_hash == result.batches[0].terminal_hash
        assert result.batches[2].seed_hash == result.batches[1].terminal_hash
        assert [(b.start_sequence, b.end_sequence) for b in result.batches] == [
            (1, 1000),
            (1001, 2000),
            (2001, 2500),
        ]
        assert source.all_events() == []
        assert len(await env.catalog.list_all()) == 3
        assert len(env.object_files()) == 3

    @pytest.mark.asyncio
    async def test_batch_metadata(self, env, make_events, cutoff):
        events = make_events(40)
        source = InMemoryEventSource(events)

        result = await env.archiver(source).archive(cutoff)
        batch = result.batches[0]

        assert batch.archive_id.startswith("audit_")
        assert batch.start_time == events[0].occurred_at
        assert batch.end_time == events[-1].occurred_at
        assert batch.storage_key == build_storage_key(
            "audit", batch.archive_id, events[0].occurred_at, 1, 40
        )
        assert batch.storage_key.startswith("audit/year=2024/month=01/day=01/")
        assert batch.size_bytes == env.object_path(batch).stat().st_size
        assert batch.uncompressed_bytes > 0
        assert batch.compliance_counts == {"consent_change": 1, "dsr": 4}
        assert batch.expires_at == batch.created_at + timedelta(days=2555)
        assert await env.catalog.lookup(batch.archive_id) == batch

    @pytest.mark.asyncio
    async def test_only_events_before_cutoff(self, env, make_events):
        source = InMemoryEventSource(make_events(100))
        cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=60)

        result = await env.archiver(source).archive(cutoff)

        assert result.events_archived == 60
        assert [e.sequence for e in source.all_events()] == list(range(61, 101))

    @pytest.mark.asyncio
    async def test_nothing_to_archive(self, env, cutoff):
        result = await env.archiver(InMemoryEventSource()).archive(cutoff)

        assert result.success
        assert result.events_archived == 0
        assert result.batches == []

    @pytest.mark.asyncio
    async def test_chain_resumes_across_runs(self, env, make_events):
        source = InMemoryEventSource(make_events(300))
        archiver = env.archiver(source)
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)

        first = await archiver.archive(base + timedelta(minutes=100), batch_size=50)
        second = await archiver.archive(base + timedelta(days=1), batch_size=50)

        assert first.events_archived == 100
        assert second.events_archived == 200
        assert second.batches[0].seed_hash == first.batches[-1].terminal_hash

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, env, make_events, cutoff):
        """A dry run uploads nothing, records nothing and removes nothing."""
        source = InMemoryEventSource(make_events(2500))
        archiver = env.archiver(source)

        dry = await archiver.archive(cutoff, dry_run=True)

        assert dry.dry_run
        assert dry.events_archived == 2500
        assert [b.event_count for b in dry.batches] == [1000, 1000, 500]
        assert source.mark_calls == []
        assert len(source.all_events()) == 2500
        assert await env.catalog.list_all() == []
        assert await env.catalog.list_operations() == []
        assert env.object_files() == []

        real = await archiver.archive(cutoff)

        assert real.events_archived == dry.events_archived
        assert [b.terminal_hash for b in real.batches] == [b.terminal_hash for b in dry.batches]

    @pytest.mark.asyncio
    async def test_failed_upload_stops_run(self, env, make_events, cutoff):
        """A failed part leaves no object, no record and no removal for that page."""
        store = FailingUploadStore(env.root / "objects", fail_on_upload=2)
        env.config = replace(env.config, part_size=1024)
        source = InMemoryEventSource(make_events(2500))

        result = await env.archiver(source, store=store).archive(cutoff)

        assert not result.success
        assert "sequence 1001" in result.error
        assert result.events_archived == 1000
        assert len(result.batches) == 1
        assert len(await env.catalog.list_all()) == 1
        assert len(env.object_files()) == 1
        assert [e.sequence for e in source.all_events()] == list(range(1001, 2501))

        retry = await env.archiver(source, store=store).archive(cutoff)

        assert retry.success
        assert retry.batches[0].seed_hash == result.batches[0].terminal_hash

    @pytest.mark.asyncio
    async def test_failed_record_deletes_object(self, env, make_events, cutoff):
        catalog = FailingRecordCatalog(env.root / "catalog.db")
        source = InMemoryEventSource(make_events(10))

        result = await env.archiver(source, catalog=catalog).archive(cutoff)

        assert "disk full" in result.error
        assert result.events_archived == 0
        assert env.object_files() == []
        assert len(source.all_events()) == 10

    @pytest.mark.asyncio
    async def test_failed_removal_keeps_archive(self, env, make_events, cutoff):
        """If removal fails after recording, the events stay live and archived."""
        source = InMemoryEventSource(make_events(1500))
        source.fail_next_mark = True

        result = await env.archiver(source).archive(cutoff)

        assert "could not remove" in result.error
        assert result.events_archived == 1000
        assert len(await env.catalog.list_all()) == 1
        assert len(source.all_events()) == 1500

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, env, make_events, cutoff):
        cancel = asyncio.Event()
        cancel.set()
        source = InMemoryEventSource(make_events(10))

        result = await env.archiver(source).archive(cutoff, cancel=cancel)

        assert result.cancelled
        assert result.events_archived == 0
        assert source.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_between_pages(self, env, make_events, cutoff):
        cancel = asyncio.Event()
        source = CancellingSource(make_events(2500), cancel)

        result = await env.archiver(source).archive(cutoff, cancel=cancel)

        assert result.cancelled
        assert result.events_archived == 1000
        assert len(await env.catalog.list_all()) == 1

    @pytest.mark.asyncio
    async def test_rejects_bad_batch_size(self, env, cutoff):
        with pytest.raises(ValueError):
            await env.archiver(InMemoryEventSource()).archive(cutoff, batch_size=0)

    @pytest.mark.asyncio
    async def test_operations_logged(self, env, make_events, cutoff):
        source = InMemoryEventSource(make_events(10))
        archiver = env.archiver(source)

        result = await archiver.archive(cutoff)
        await archiver.verify_integrity(result.batches[0].archive_id)

        records = await env.catalog.list_operations()
        types = {r.operation_type for r in records}
        assert types == {OperationType.ARCHIVE, OperationType.VERIFY}
        archive_record = next(r for r in records if r.operation_type == OperationType.ARCHIVE)
        assert archive_record.success
        assert archive_record.event_count == 10

    @pytest.mark.asyncio
    async def test_sqlite_source(self, env, make_events, cutoff):
        source = SQLiteEventSource(str(env.root / "events.db"))
        await source.initialize()
        await source.insert_events(make_events(250))

        result = await env.archiver(source).archive(cutoff, batch_size=100)

        assert result.events_archived == 250
        assert await source.count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", ["memory", "sqlite"])
    async def test_younger_event_inside_range_stays_live(
        self, env, make_events, cutoff, kind
    ):
        """An event between archived sequences but not yet due is never removed."""
        events = make_events(3)
        late = replace(events[1], occurred_at=cutoff + timedelta(days=1))
        events[1] = late
        if kind == "memory":
            source = InMemoryEventSource(events)
        else:
            source = SQLiteEventSource(str(env.root / "events.db"))
            await source.initialize()
            await source.insert_events(events)
        archiver = env.archiver(source)

        result = await archiver.archive(cutoff)

        batch = result.batches[0]
        assert result.events_archived == 2
        assert (batch.start_sequence, batch.end_sequence) == (1, 3)
        page = await source.fetch_older_than(cutoff + timedelta(days=365), 10)
        assert page.events == [late]
        assert (await archiver.verify_integrity(batch.archive_id)).is_valid
        with pytest.raises(ArchivedEventNotFoundError) as exc_info:
            await archiver.get_archived_event(2)
        assert exc_info.value.archive_id == batch.archive_id

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_committed_pages(self, env, make_events, cutoff):
        """A fetch failure mid-run is reported with the pages already committed."""
        source = FailingFetchSource(make_events(20), fail_on_fetch=2)

        result = await env.archiver(source).archive(cutoff, batch_size=10)

        assert "connection reset" in result.error
        assert result.events_archived == 10
        assert len(result.batches) == 1
        assert len(await env.catalog.list_all()) == 1
        assert [e.sequence for e in source.all_events()] == list(range(11, 21))
        records = await env.catalog.list_operations(OperationType.ARCHIVE)
        assert len(records) == 1
        assert not records[0].success
        assert records[0].event_count == 10

    @pytest.mark.asyncio
    async def test_unreadable_catalog_stops_before_fetching(self, env, make_events, cutoff):
        catalog = UnreadableCatalog(env.root / "catalog.db")
        source = InMemoryEventSource(make_events(10))

        result = await env.archiver(source, catalog=catalog).archive(cutoff)

        assert "database is locked" in result.error
        assert result.events_archived == 0
        assert source.fetch_calls == 0
        assert env.object_files() == []


class TestVerifyAndRestore:
    """Tests for verify_integrity() and restore()."""

    @pytest.fixture
    def env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Env(
                Path(tmpdir),
                ArchiveConfig(
                    provider=StorageProvider.LOCAL,
                    batch_size=500,
                    compression=Compression.ZSTD,
                    row_group_size=100,
                    part_size=8 * 1024,
                    timeout_seconds=10,
                ),
            )

    async def _archive(self, env, make_events, cutoff, count=1200):
        source = InMemoryEventSource(make_events(count))
        archiver = env.archiver(source)
        result = await archiver.archive(cutoff)
        return archiver, source, result.batches

    def _tamper(self, env, batch, index):
        """Flip one payload bit of event `index`, keeping its stored hash."""
        path = env.object_path(batch)
        decoded = decode(path.read_bytes())
        events = list(decoded.events)
        original = events[index]
        payload = bytearray(original.event.payload)
        payload[0] ^= 0x01
        events[index] = ChainedEvent(
            event=replace(original.event, payload=bytes(payload)),
            event_hash=original.event_hash,
        )
        metadata = {
            k: v for k, v in decoded.metadata.items() if k not in ("format_version", "row_count")
        }
        path.write_bytes(encode(events, row_group_size=100, metadata=metadata))

    @pytest.mark.asyncio
    async def test_fresh_archives_verify(self, env, make_events, cutoff):
        archiver, _, batches = await self._archive(env, make_events, cutoff)

        for batch in batches:
            result = await archiver.verify_integrity(batch.archive_id)
            assert result.is_valid
            assert result.parquet_valid and result.hash_chain_valid and result.metadata_valid
            assert result.errors == []
            assert result.event_count == batch.event_count
            assert result.first_divergent_index is None

    @pytest.mark.asyncio
    async def test_truncated_object(self, env, make_events, cutoff):
        """A truncated object is structurally invalid and never restored."""
        archiver, source, batches = await self._archive(env, make_events, cutoff)
        path = env.object_path(batches[0])
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 2])

        result = await archiver.verify_integrity(batches[0].archive_id)

        assert not result.parquet_valid
        assert not result.is_valid
        assert batches[0].archive_id in result.errors[0]
        assert "parquet check failed" in result.errors[0]

        restored = await archiver.restore(batches[0].archive_id)

        assert restored.events_restored == 0
        assert restored.verification_status == "INVALID"
        assert restored.errors
        assert source.all_events() == []

    @pytest.mark.asyncio
    async def test_tampered_event(self, env, make_events, cutoff):
        """Tampering is a chain failure at the event, not a structural one."""
        archiver, source, batches = await self._archive(env, make_events, cutoff)
        self._tamper(env, batches[1], 137)

        result = await archiver.verify_integrity(batches[1].archive_id)

        assert result.parquet_valid
        assert not result.hash_chain_valid
        assert result.first_divergent_index == 137
        assert result.metadata_valid
        assert not result.is_valid
        assert any("hash chain check failed" in e for e in result.errors)

        restored = await archiver.restore(batches[1].archive_id)
        assert restored.events_restored == 0
        assert source.all_events() == []

    @pytest.mark.asyncio
    async def test_missing_object(self, env, make_events, cutoff):
        archiver, _, batches = await self._archive(env, make_events, cutoff)
        env.object_path(batches[0]).unlink()

        result = await archiver.verify_integrity(batches[0].archive_id)

        assert not result.is_valid
        assert not result.parquet_valid
        assert "download error" in result.errors[0]

    @pytest.mark.asyncio
    async def test_object_swapped_between_archives(self, env, make_events, cutoff):
        """An intact object under the wrong key fails against the catalog."""
        archiver, _, batches = await self._archive(env, make_events, cutoff)
        env.object_path(batches[0]).write_bytes(env.object_path(batches[1]).read_bytes())

        result = await archiver.verify_integrity(batches[0].archive_id)

        assert result.parquet_valid
        assert not result.hash_chain_valid
        assert not result.metadata_valid

    @pytest.mark.asyncio
    async def test_unknown_archive(self, env):
        archiver = env.archiver(InMemoryEventSource())

        with pytest.raises(ArchiveNotFoundError):
            await archiver.verify_integrity("audit_missing")
        with pytest.raises(ArchiveNotFoundError):
            await archiver.restore("audit_missing")

    @pytest.mark.asyncio
    async def test_restore_round_trip(self, env, make_events, cutoff):
        archiver, source, batches = await self._archive(env, make_events, cutoff)

        result = await archiver.restore(batches[0].archive_id)

        assert result.verification_status == "VALID"
        assert result.events_restored == 500
        assert result.errors == []
        assert source.all_events() == make_events(500)

    @pytest.mark.asyncio
    async def test_restore_partial_failures(self, env, make_events, cutoff):
        """Insert failures are reported per event without stopping the restore."""
        archiver, source, batches = await self._archive(env, make_events, cutoff)
        source.add_events(make_events(1, start=10))
        source.fail_inserts = {20}

        result = await archiver.restore(batches[0].archive_id)

        assert result.events_restored == 498
        assert len(result.errors) == 2
        assert any("event 10" in e for e in result.errors)
        assert any("event 20" in e for e in result.errors)
        assert len(source.all_events()) == 499

    @pytest.mark.asyncio
    async def test_restore_dry_run(self, env, make_events, cutoff):
        archiver, source, batches = await self._archive(env, make_events, cutoff)

        result = await archiver.restore(batches[2].archive_id, dry_run=True)

        assert result.dry_run
        assert result.verification_status == "VALID"
        assert result.events_would_restore == 200
        assert result.events_restored == 0
        assert source.all_events() == []


class TestStatsAndQueries:
    """Tests for stats(), list_archives(), query_archive(), get_archived_event()."""

    @pytest.fixture
    def env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Env(
                Path(tmpdir),
                ArchiveConfig(
                    provider=StorageProvider.LOCAL,
                    batch_size=1000,
                    part_size=64 * 1024,
                    retention_days=30,
                    timeout_seconds=10,
                ),
            )

    @pytest.mark.asyncio
    async def test_stats(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        result = await archiver.archive(cutoff)

        stats = await archiver.stats()

        assert stats.total_archives == 3
        assert stats.total_events == 2500
        assert stats.total_size_bytes == sum(b.size_bytes for b in result.batches)
        assert stats.average_size_bytes == stats.total_size_bytes / 3
        assert stats.compression_ratio > 1.0
        assert stats.oldest_archive == result.batches[0].start_time
        assert stats.newest_archive == result.batches[-1].end_time
        assert stats.archives_by_year == {2024: 3}
        assert stats.events_by_compliance == {"consent_change": 100, "dsr": 250}

    @pytest.mark.asyncio
    async def test_stats_empty(self, env):
        stats = await env.archiver(InMemoryEventSource()).stats()

        assert stats.total_archives == 0
        assert stats.compression_ratio == 0.0
        assert stats.oldest_archive is None

    @pytest.mark.asyncio
    async def test_list_archives(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        result = await archiver.archive(cutoff)

        found = await archiver.list_archives(
            result.batches[1].start_time, result.batches[1].end_time
        )

        assert [b.archive_id for b in found] == [result.batches[1].archive_id]

    @pytest.mark.asyncio
    async def test_query_filters(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        await archiver.archive(cutoff)

        result = await archiver.query_archive(
            ArchiveQuery(
                start_time=datetime(2024, 1, 1, tzinfo=timezone.utc),
                end_time=cutoff,
                actors={"user:3"},
                actions={"delete"},
                limit=0,
            )
        )

        expected = [
            e.sequence for e in make_events(2500) if e.actor == "user:3" and e.action == "delete"
        ]
        assert [e.sequence for e in result.events] == expected
        assert result.archives_scanned == 3
        assert not result.has_more

    @pytest.mark.asyncio
    async def test_query_limit(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        await archiver.archive(cutoff)

        result = await archiver.query_archive(
            ArchiveQuery(start_time=datetime(2024, 1, 1, tzinfo=timezone.utc), end_time=cutoff,
                         limit=10)
        )

        assert [e.sequence for e in result.events] == list(range(1, 11))
        assert result.has_more

    @pytest.mark.asyncio
    async def test_query_skips_damaged_archive(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        result = await archiver.archive(cutoff)
        env.object_path(result.batches[0]).write_bytes(b"garbage")

        found = await archiver.query_archive(
            ArchiveQuery(start_time=datetime(2024, 1, 1, tzinfo=timezone.utc), end_time=cutoff,
                         limit=0)
        )

        assert found.archives_failed == 1
        assert found.archives_scanned == 2
        assert len(found.events) == 1500

    def test_query_rejects_inverted_range(self, cutoff):
        with pytest.raises(ValueError):
            ArchiveQuery(start_time=cutoff, end_time=cutoff - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_get_archived_event(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        await archiver.archive(cutoff)

        event = await archiver.get_archived_event(1234)

        assert event == make_events(1, start=1234)[0]
        with pytest.raises(ArchivedEventNotFoundError) as exc_info:
            await archiver.get_archived_event(9999)
        assert exc_info.value.sequence == 9999
        assert exc_info.value.archive_id is None
        assert str(exc_info.value) == "Event 9999 not found in any archive"
        assert isinstance(exc_info.value, ArchiveNotFoundError)

    @pytest.mark.asyncio
    async def test_delete_expired_respects_legal_hold(self, env, make_events, cutoff):
        archiver = env.archiver(InMemoryEventSource(make_events(2500)))
        result = await archiver.archive(cutoff)
        held, first, second = result.batches[1], result.batches[0], result.batches[2]
        await env.catalog.place_legal_hold(held.archive_id, "litigation")

        not_yet = await archiver.delete_expired(now=held.created_at + timedelta(days=29))
        deleted = await archiver.delete_expired(now=held.created_at + timedelta(days=31))

        assert not_yet == 0
        assert deleted == 2
        assert [b.archive_id for b in await env.catalog.list_all()] == [held.archive_id]
        assert not env.object_path(first).exists()
        assert not env.object_path(second).exists()
        assert env.object_path(held).exists()
        deletes = await env.catalog.list_operations(OperationType.DELETE)
        assert {r.archive_id for r in deletes} == {first.archive_id, second.archive_id}

    @pytest.mark.asyncio
    async def test_delete_expired_keeps_record_when_object_delete_fails(
        self, env, make_events, cutoff
    ):
        class BrokenDeleteStore(LocalObjectStore):
            async def delete(self, key, *, timeout):
                raise StorageError("access denied", key=key)

        source = InMemoryEventSource(make_events(10))
        store = BrokenDeleteStore(env.root / "objects", retry=NO_WAIT)
        archiver = env.archiver(source, store=store)
        result = await archiver.archive(cutoff)

        deleted = await archiver.delete_expired(now=result.batches[0].expires_at)

        assert deleted == 0
        assert len(await env.catalog.list_all()) == 1
