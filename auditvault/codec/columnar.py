"""
Columnar (Parquet) encoding of archive batches.

Archive objects are Parquet files so that compliance teams can query them with
ordinary analytical tools. Each file holds one batch:

    row group 0 .. n-1   (row_group_size rows each, compressed per page,
                          CRC32 checksum on every page)
    footer               (schema, row-group offsets, key-value metadata)

Key-value metadata:
    auditvault.format_version   Format of this file (FORMAT_VERSION)
    auditvault.row_count        Number of rows written
    plus caller metadata (archive id, seed hash)

Invariants:
    - decode() never raises for damaged input; structural problems are
      returned in DecodedBatch.errors
    - Structural corruption is reported separately from hash-chain tampering;
      this module knows nothing about hashes beyond carrying them
    - Compression changes the bytes on disk, never the decoded events

How to change safely:
    - New columns must be added at the end and be optional for old files
    - Bump FORMAT_VERSION for any incompatible layout change and keep the
      old reader path
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import pyarrow as pa
import pyarrow.parquet as pq

from ..chain.hashchain import ChainedEvent
from ..config import Compression
from ..source.base import AuditEvent, from_micros, to_micros

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1"
FILE_EXTENSION = ".parquet"
CONTENT_TYPE = "application/vnd.apache.parquet"

_META_PREFIX = "auditvault."
_VERSION_KEY = b"auditvault.format_version"
_ROW_COUNT_KEY = b"auditvault.row_count"

EVENT_SCHEMA = pa.schema(
    [
        pa.field("sequence", pa.int64(), nullable=False),
        pa.field("occurred_at", pa.timestamp("us", tz="UTC"), nullable=False),
        pa.field("actor", pa.string(), nullable=False),
        pa.field("action", pa.string(), nullable=False),
        pa.field("resource", pa.string(), nullable=False),
        pa.field("payload", pa.binary(), nullable=False),
        pa.field("compliance_flags", pa.list_(pa.string()), nullable=False),
        pa.field("event_hash", pa.string(), nullable=False),
    ]
)

# Column name -> predicate accepting the type read back from the footer.
_EXPECTED_TYPES = {
    "sequence": pa.types.is_int64,
    "occurred_at": lambda t: pa.types.is_timestamp(t) and t.unit == "us",
    "actor": pa.types.is_string,
    "action": pa.types.is_string,
    "resource": pa.types.is_string,
    "payload": pa.types.is_binary,
    "compliance_flags": lambda t: pa.types.is_list(t) and pa.types.is_string(t.value_type),
    "event_hash": pa.types.is_string,
}


class ColumnarEncodeError(ValueError):
    """Batch cannot be encoded."""

    pass


@dataclass
class DecodedBatch:
    """Result of decoding an archive object.

    Attributes:
        events: Events that could be decoded, in file order
        errors: Structural problems found (empty when the file is sound)
        metadata: Key-value metadata from the footer
        row_groups: Number of row groups declared by the footer
    """

    events: list[ChainedEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)
    row_groups: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


def _codec_name(compression: Compression) -> str:
    return compression.value.upper()


def encode(
    events: list[ChainedEvent],
    compression: Compression = Compression.SNAPPY,
    row_group_size: int = 100_000,
    metadata: dict[str, str] | None = None,
) -> bytes:
    """Encode a chained batch as a Parquet file.

    Args:
        events: Chained events in sequence order
        compression: Codec applied to every column chunk
        row_group_size: Maximum rows per row group
        metadata: Extra key-value metadata (stored with an "auditvault." prefix)

    Returns:
        Complete Parquet file contents

    Raises:
        ColumnarEncodeError: If the batch is empty or parameters are invalid
    """
    if not events:
        raise ColumnarEncodeError("Cannot encode an empty batch")
    if row_group_size <= 0:
        raise ColumnarEncodeError(f"row_group_size must be positive, got {row_group_size}")

    columns = {
        "sequence": pa.array([c.event.sequence for c in events], type=pa.int64()),
        "occurred_at": pa.array(
            [to_micros(c.event.occurred_at) for c in events],
            type=pa.timestamp("us", tz="UTC"),
        ),
        "actor": pa.array([c.event.actor for c in events], type=pa.string()),
        "action": pa.array([c.event.action for c in events], type=pa.string()),
        "resource": pa.array([c.event.resource for c in events], type=pa.string()),
        "payload": pa.array([c.event.payload for c in events], type=pa.binary()),
        "compliance_flags": pa.array(
            [sorted(c.event.compliance_flags) for c in events], type=pa.list_(pa.string())
        ),
        "event_hash": pa.array([c.event_hash for c in events], type=pa.string()),
    }

    file_metadata = {
        _VERSION_KEY: FORMAT_VERSION.encode(),
        _ROW_COUNT_KEY: str(len(events)).encode(),
    }
    for key, value in (metadata or {}).items():
        file_metadata[f"{_META_PREFIX}{key}".encode()] = value.encode()

    table = pa.Table.from_arrays(
        list(columns.values()),
        schema=EVENT_SCHEMA.with_metadata(file_metadata),
    )

    sink = pa.BufferOutputStream()
    pq.write_table(
        table,
        sink,
        row_group_size=row_group_size,
        compression=_codec_name(compression),
        write_page_checksum=True,
    )
    data = sink.getvalue().to_pybytes()

    logger.debug(
        "Encoded archive batch",
        extra={
            "events": len(events),
            "compression": compression.value,
            "row_group_size": row_group_size,
            "size_bytes": len(data),
        },
    )
    return data


def _check_schema(schema: pa.Schema) -> list[str]:
    errors = []
    names = set(schema.names)
    for name, predicate in _EXPECTED_TYPES.items():
        if name not in names:
            errors.append(f"schema mismatch: missing column '{name}'")
        elif not predicate(schema.field(name).type):
            errors.append(
                f"schema mismatch: column '{name}' has unexpected type {schema.field(name).type}"
            )
    return errors


def _rows_to_events(table: pa.Table, row_group: int) -> tuple[list[ChainedEvent], list[str]]:
    for name in _EXPECTED_TYPES:
        if table.column(name).null_count:
            return [], [f"row group {row_group}: column '{name}' contains nulls"]

    occurred = table.column("occurred_at").cast(pa.int64()).to_pylist()
    columns = {
        name: table.column(name).to_pylist() for name in _EXPECTED_TYPES if name != "occurred_at"
    }

    events: list[ChainedEvent] = []
    errors: list[str] = []
    for i in range(table.num_rows):
        try:
            event = AuditEvent(
                sequence=columns["sequence"][i],
                occurred_at=from_micros(occurred[i]),
                actor=columns["actor"][i],
                action=columns["action"][i],
                resource=columns["resource"][i],
                payload=columns["payload"][i],
                compliance_flags=frozenset(columns["compliance_flags"][i]),
            )
        except (TypeError, ValueError) as e:
            errors.append(f"row group {row_group}, row {i}: invalid event: {e}")
            continue
        events.append(ChainedEvent(event=event, event_hash=columns["event_hash"][i]))
    return events, errors


def decode(data: bytes) -> DecodedBatch:
    """Decode a Parquet archive object.

    Every row group is read with page checksum verification. Any structural
    problem (truncated footer, checksum failure, schema mismatch, row count
    mismatch) is recorded in the returned errors list.

    Args:
        data: Complete object contents

    Returns:
        DecodedBatch with events and structural errors
    """
    result = DecodedBatch()

    try:
        parquet_file = pq.ParquetFile(pa.BufferReader(data), page_checksum_verification=True)
    except (pa.ArrowException, OSError, ValueError) as e:
        result.errors.append(f"unreadable parquet footer: {e}")
        return result

    raw_metadata = parquet_file.metadata.metadata or {}
    result.metadata = {
        k.decode(errors="replace")[len(_META_PREFIX):]: v.decode(errors="replace")
        for k, v in raw_metadata.items()
        if k.startswith(_META_PREFIX.encode())
    }

    version = result.metadata.get("format_version")
    if version != FORMAT_VERSION:
        result.errors.append(f"unsupported archive format version: {version!r}")
        return result

    schema_errors = _check_schema(parquet_file.schema_arrow)
    if schema_errors:
        result.errors.extend(schema_errors)
        return result

    result.row_groups = parquet_file.metadata.num_row_groups
    for index in range(result.row_groups):
        try:
            table = parquet_file.read_row_group(index, columns=list(_EXPECTED_TYPES))
        except (pa.ArrowException, OSError, ValueError) as e:
            result.errors.append(f"row group {index}: {e}")
            continue
        events, errors = _rows_to_events(table, index)
        result.events.extend(events)
        result.errors.extend(errors)

    declared = result.metadata.get("row_count")
    if declared is not None and declared != str(parquet_file.metadata.num_rows):
        result.errors.append(
            f"row count mismatch: footer declares {declared}, "
            f"file holds {parquet_file.metadata.num_rows}"
        )

    return result
