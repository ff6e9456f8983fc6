"""
Tamper-evident hash chain over archived events.

Pure functions only; no I/O and no retries.
"""

from .hashchain import (
    CANONICAL_VERSION,
    GENESIS_HASH,
    ChainedEvent,
    ChainVerification,
    build_chain,
    canonical_bytes,
    compute_batch_digest,
    verify_chain,
)

__all__ = [
    "CANONICAL_VERSION",
    "GENESIS_HASH",
    "ChainedEvent",
    "ChainVerification",
    "build_chain",
    "canonical_bytes",
    "compute_batch_digest",
    "verify_chain",
]
