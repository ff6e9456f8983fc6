"""
Archive orchestration: archive, verify, restore, statistics, retention.
"""

from .archiver import Archiver, build_storage_key
from .results import (
    ArchiveQuery,
    ArchiveQueryResult,
    ArchiveRunResult,
    ArchiveStats,
    IntegrityVerificationResult,
    RestoreResult,
)

__all__ = [
    "Archiver",
    "build_storage_key",
    "ArchiveQuery",
    "ArchiveQueryResult",
    "ArchiveRunResult",
    "ArchiveStats",
    "IntegrityVerificationResult",
    "RestoreResult",
]
