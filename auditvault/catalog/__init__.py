"""
Archive catalog: durable metadata for every archived batch.
"""

from .catalog import (
    ARCHIVE_ID_PREFIX,
    ArchiveBatch,
    ArchiveCatalog,
    OperationRecord,
    OperationType,
    new_archive_id,
)

__all__ = [
    "ARCHIVE_ID_PREFIX",
    "ArchiveBatch",
    "ArchiveCatalog",
    "OperationRecord",
    "OperationType",
    "new_archive_id",
]
