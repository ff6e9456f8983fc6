"""
Hash chain for archived audit events.

Every archived event is linked to its predecessor:

    event_hash[i] = SHA-256(canonical_bytes(event[i]) || event_hash[i-1])
    event_hash[-1] = seed_hash

The seed of a batch is the terminal hash of the previous batch (GENESIS_HASH
for the very first batch), so the chain spans the whole archive history.

Invariants:
    - canonical_bytes() is independent of the Parquet encoding and of the
      compression codec; hashing happens on these bytes only
    - Recomputing the chain over stored events reproduces the stored hashes
    - Changing any bit of event i invalidates hashes i..n-1

How to change safely:
    - canonical_bytes() output must never change for CANONICAL_VERSION 1;
      introduce a new version instead
    - Keep this module free of I/O
"""

from __future__ import annotations

import base64
import hashlib
import json
from dataclasses import dataclass

from ..source.base import AuditEvent, to_micros

CANONICAL_VERSION = 1

GENESIS_HASH = "0" * 64

_HEX_DIGITS = frozenset("0123456789abcdef")


@dataclass(frozen=True)
class ChainedEvent:
    """An audit event together with its chain hash.

    Attributes:
        event: The archived event
        event_hash: Hex SHA-256 linking this event to its predecessor
    """

    event: AuditEvent
    event_hash: str

    @property
    def sequence(self) -> int:
        return self.event.sequence


@dataclass(frozen=True)
class ChainVerification:
    """Outcome of verify_chain().

    Attributes:
        valid: Whether the chain reproduces and ends at the expected hash
        first_divergent_index: Position of the first event whose recomputed
            hash differs; len(events) when only the terminal hash differs;
            None when valid
        computed_terminal_hash: Terminal hash obtained by recomputation
    """

    valid: bool
    first_divergent_index: int | None
    computed_terminal_hash: str


def validate_hash(value: str) -> str:
    """Check that value is a 64-char lower-case hex digest.

    Raises:
        ValueError: If the value is not a valid digest
    """
    if len(value) != 64 or not set(value) <= _HEX_DIGITS:
        raise ValueError(f"Invalid hash value: {value!r}")
    return value


def canonical_bytes(event: AuditEvent) -> bytes:
    """Deterministic byte representation of an event used for hashing."""
    document = {
        "v": CANONICAL_VERSION,
        "sequence": event.sequence,
        "occurred_at_us": to_micros(event.occurred_at),
        "actor": event.actor,
        "action": event.action,
        "resource": event.resource,
        "payload_b64": base64.b64encode(event.payload).decode("ascii"),
        "compliance_flags": sorted(event.compliance_flags),
    }
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("ascii")


def hash_event(event: AuditEvent, previous_hash: str) -> str:
    """Compute the chain hash of one event."""
    digest = hashlib.sha256()
    digest.update(canonical_bytes(event))
    digest.update(bytes.fromhex(previous_hash))
    return digest.hexdigest()


def build_chain(
    seed_hash: str,
    events: list[AuditEvent],
) -> tuple[list[ChainedEvent], str]:
    """Chain an ordered sequence of events.

    Args:
        seed_hash: Terminal hash of the previous batch (or GENESIS_HASH)
        events: Events in strictly increasing sequence order

    Returns:
        (chained_events, terminal_hash); terminal_hash is seed_hash when
        events is empty

    Raises:
        ValueError: If the seed is malformed or sequences are not increasing
    """
    previous = validate_hash(seed_hash)
    chained: list[ChainedEvent] = []
    last_sequence: int | None = None

    for event in events:
        if last_sequence is not None and event.sequence <= last_sequence:
            raise ValueError(
                f"Events must be strictly increasing by sequence: "
                f"{event.sequence} follows {last_sequence}"
            )
        previous = hash_event(event, previous)
        chained.append(ChainedEvent(event=event, event_hash=previous))
        last_sequence = event.sequence

    return chained, previous


def verify_chain(
    seed_hash: str,
    events: list[ChainedEvent],
    expected_terminal_hash: str,
) -> ChainVerification:
    """Recompute the chain over stored events and compare.

    Args:
        seed_hash: Seed recorded for the batch
        events: Decoded events with their stored hashes
        expected_terminal_hash: Terminal hash recorded for the batch

    Returns:
        ChainVerification with the first divergent index if invalid
    """
    previous = seed_hash
    for index, chained in enumerate(events):
        recomputed = hash_event(chained.event, previous)
        if recomputed != chained.event_hash:
            return ChainVerification(
                valid=False,
                first_divergent_index=index,
                computed_terminal_hash=recomputed,
            )
        previous = recomputed

    if previous != expected_terminal_hash:
        return ChainVerification(
            valid=False,
            first_divergent_index=len(events),
            computed_terminal_hash=previous,
        )

    return ChainVerification(valid=True, first_divergent_index=None, computed_terminal_hash=previous)


def compute_batch_digest(seed_hash: str, events: list[ChainedEvent]) -> str:
    """Digest of a whole batch: SHA-256 over the seed and every event hash in order."""
    digest = hashlib.sha256(bytes.fromhex(seed_hash))
    for chained in events:
        digest.update(bytes.fromhex(chained.event_hash))
    return digest.hexdigest()


def uncompressed_size(events: list[ChainedEvent]) -> int:
    """Total canonical size of a batch, the baseline for compression ratios."""
    return sum(len(canonical_bytes(c.event)) for c in events)
