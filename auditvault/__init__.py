"""
AuditVault - tamper-evident archival of audit events to object storage.

This package moves aging audit events out of the live store into compressed,
hash-chained Parquet objects and can later verify or restore them:
- Event source adapters read pages of events older than a cutoff
- The hash chain links every event to its predecessor across all batches
- The columnar codec writes row-grouped, checksummed Parquet files
- Object stores upload with bounded-concurrency multipart transfers
- The catalog is the ground truth for every archived batch

Architecture:
    ┌──────────────┐    ┌────────────┐    ┌──────────┐    ┌──────────────┐
    │ Event Source │───▶│ Hash Chain │───▶│ Columnar │───▶│ Object Store │
    │   (live DB)  │    │  Builder   │    │  Encoder │    │  (S3/local)  │
    └──────────────┘    └────────────┘    └──────────┘    └──────┬───────┘
            ▲                                                    │
            │ mark archived / restore                            ▼
            │                                             ┌──────────────┐
            └─────────────────── Archiver ◀──────────────▶│   Catalog    │
                                                          │   (SQLite)   │
                                                          └──────────────┘

Invariants:
    - Catalog metadata is written before source events are removed
    - Object storage is untrusted; it is always checked against the catalog
    - Every batch is seeded with the terminal hash of the previous batch

How to change safely:
    - Never change canonical event bytes without bumping the canonical version
    - Keep the Parquet schema additive; old archives must stay decodable
"""

from ._version import __version__

__all__ = ["__version__"]
