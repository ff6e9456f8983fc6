"""
Object storage for archive batches.

Adapters:
- S3ObjectStore: AWS S3 or S3-compatible services via aiobotocore
- LocalObjectStore: Local filesystem (development, tests)
"""

from .base import (
    ObjectStore,
    RetryPolicy,
    check_cancelled,
    create_object_store,
    split_parts,
    with_retries,
)
from .local import LocalObjectStore
from .s3 import S3ObjectStore, translate_error

__all__ = [
    "ObjectStore",
    "RetryPolicy",
    "create_object_store",
    "with_retries",
    "split_parts",
    "check_cancelled",
    "LocalObjectStore",
    "S3ObjectStore",
    "translate_error",
]
