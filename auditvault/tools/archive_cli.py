"""
Archiver CLI for AuditVault.

Runs one archive, verify, restore, stats or delete-expired operation and
exits. Scheduling is left to cron or a job runner.

Usage:
    auditvault-archiver --mode archive --days 90 [--batch-size N] [--dry-run]
    auditvault-archiver --mode verify --archive-id <id>
    auditvault-archiver --mode restore --archive-id <id> [--dry-run]
    auditvault-archiver --mode stats
    auditvault-archiver --mode delete-expired

Configuration comes from the environment (see auditvault.config); command
line flags override the database paths.

Invariants:
    - Exit code 0 only when the operation fully succeeded
    - SIGINT/SIGTERM request cancellation; committed batches stay committed
    - All operations are logged

How to change safely:
    - Keep flags stable; they are referenced by scheduled jobs
    - Add new modes additively
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timedelta, timezone

import json_log_formatter

from ..archive import (
    ArchiveRunResult,
    ArchiveStats,
    Archiver,
    IntegrityVerificationResult,
    RestoreResult,
)
from ..catalog import ArchiveCatalog
from ..config import ObservabilityConfig, VaultConfig
from ..errors import ArchiveError
from ..source import SQLiteEventSource
from ..storage import create_object_store

logger = logging.getLogger(__name__)

MODES = ("archive", "verify", "stats", "restore", "delete-expired")


def setup_logging(config: ObservabilityConfig, verbose: bool = False) -> None:
    """Configure logging based on configuration.

    Args:
        config: Logging settings
        verbose: Force DEBUG level
    """
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auditvault-archiver",
        description="Archive, verify and restore audit events",
    )
    parser.add_argument("--mode", choices=MODES, default="archive", help="Operation to run")
    parser.add_argument(
        "--days", type=int, default=90, help="Archive events older than this many days"
    )
    parser.add_argument("--batch-size", type=int, help="Events per archive batch")
    parser.add_argument("--archive-id", help="Archive to verify or restore")
    parser.add_argument("--dry-run", action="store_true", help="Don't make changes")
    parser.add_argument("--catalog-db", help="Archive catalog SQLite file")
    parser.add_argument("--source-db", help="Live audit event SQLite file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def _print_archive(result: ArchiveRunResult) -> None:
    label = "Dry run" if result.dry_run else "Archive run"
    print(f"{label} finished")
    print(f"  Events archived: {result.events_archived}")
    print(f"  Batches: {len(result.batches)}")
    print(f"  Duration: {result.elapsed_seconds:.2f}s ({result.events_per_second:.0f} events/s)")
    for batch in result.batches:
        print(
            f"  {batch.archive_id}: sequences {batch.start_sequence}-{batch.end_sequence}"
            f" ({batch.event_count} events) -> {batch.storage_key}"
        )


def _print_verification(result: IntegrityVerificationResult) -> None:
    print(f"Archive: {result.archive_id}")
    print(f"  Valid: {result.is_valid}")
    print(f"  Events: {result.event_count}")
    print(f"  Parquet valid: {result.parquet_valid}")
    print(f"  Hash chain valid: {result.hash_chain_valid}")
    print(f"  Metadata valid: {result.metadata_valid}")
    if result.first_divergent_index is not None:
        print(f"  First divergent event: {result.first_divergent_index}")
    for error in result.errors:
        print(f"  - {error}")


def _print_restore(result: RestoreResult) -> None:
    print(f"Archive: {result.archive_id}")
    print(f"  Verification: {result.verification_status}")
    if result.dry_run:
        print(f"  Events that would be restored: {result.events_would_restore}")
    else:
        print(f"  Events restored: {result.events_restored}")
    print(f"  Duration: {result.restore_time:.2f}s")
    for error in result.errors:
        print(f"  - {error}")


def _print_stats(stats: ArchiveStats) -> None:
    print("Archive statistics")
    print(f"  Archives: {stats.total_archives}")
    print(f"  Events: {stats.total_events}")
    print(f"  Total size: {stats.total_size_bytes} bytes")
    print(f"  Average size: {stats.average_size_bytes:.0f} bytes")
    print(f"  Compression ratio: {stats.compression_ratio:.2f}")
    if stats.oldest_archive and stats.newest_archive:
        print(f"  Covers: {stats.oldest_archive.isoformat()} .. {stats.newest_archive.isoformat()}")
    for year, count in stats.archives_by_year.items():
        print(f"  {year}: {count} archives")
    for flag, count in stats.events_by_compliance.items():
        print(f"  {flag}: {count} events")


async def run(args: argparse.Namespace, config: VaultConfig) -> int:
    """Execute one CLI operation.

    Returns:
        Process exit code
    """
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, cancelling")
        cancel.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    source = SQLiteEventSource(config.source_path)
    catalog = ArchiveCatalog(config.catalog_path)
    await source.initialize()
    await catalog.initialize()

    store = create_object_store(config)
    archiver = Archiver(
        source,
        store,
        catalog,
        config.archive,
        bucket=config.bucket,
        prefix=config.prefix,
    )

    try:
        if args.mode == "archive":
            cutoff = datetime.now(timezone.utc) - timedelta(days=args.days)
            result = await archiver.archive(
                cutoff, batch_size=args.batch_size, dry_run=args.dry_run, cancel=cancel
            )
            _print_archive(result)
            if result.cancelled:
                print("Archive run cancelled", file=sys.stderr)
                return 1
            if result.error:
                print(f"Archive run failed: {result.error}", file=sys.stderr)
                return 1
            return 0

        if args.mode == "verify":
            verification = await archiver.verify_integrity(args.archive_id, cancel=cancel)
            _print_verification(verification)
            if not verification.is_valid:
                print("integrity check failed", file=sys.stderr)
                return 1
            return 0

        if args.mode == "restore":
            restored = await archiver.restore(args.archive_id, dry_run=args.dry_run, cancel=cancel)
            _print_restore(restored)
            if not restored.verification.is_valid:
                print("integrity check failed", file=sys.stderr)
                return 1
            return 1 if restored.errors else 0

        if args.mode == "stats":
            _print_stats(await archiver.stats())
            return 0

        deleted = await archiver.delete_expired(cancel=cancel)
        print(f"Deleted {deleted} expired archives")
        return 0

    except ArchiveError as e:
        logger.error(f"{args.mode} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for the archiver."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.mode in ("verify", "restore") and not args.archive_id:
        parser.error(f"--archive-id is required for --mode {args.mode}")
    if args.days < 0:
        parser.error("--days must not be negative")
    if args.batch_size is not None and args.batch_size <= 0:
        parser.error("--batch-size must be positive")

    try:
        config = VaultConfig.from_env()
        if args.catalog_db:
            config.catalog_path = args.catalog_db
        if args.source_db:
            config.source_path = args.source_db
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.observability, verbose=args.verbose)
    config.log_config()

    sys.exit(asyncio.run(run(args, config)))


if __name__ == "__main__":
    main()
