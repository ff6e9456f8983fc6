"""
Columnar encoding of archive batches (Parquet via pyarrow).
"""

from .columnar import (
    CONTENT_TYPE,
    FILE_EXTENSION,
    FORMAT_VERSION,
    ColumnarEncodeError,
    DecodedBatch,
    decode,
    encode,
)

__all__ = [
    "CONTENT_TYPE",
    "FILE_EXTENSION",
    "FORMAT_VERSION",
    "ColumnarEncodeError",
    "DecodedBatch",
    "decode",
    "encode",
]
