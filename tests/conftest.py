"""
Shared fixtures for AuditVault tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from auditvault.source.base import AuditEvent

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

# Every event built by make_events is older than this.
CUTOFF = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _flags_for(sequence: int) -> frozenset[str]:
    flags = set()
    if sequence % 10 == 0:
        flags.add("dsr")
    if sequence % 25 == 0:
        flags.add("consent_change")
    return frozenset(flags)


@pytest.fixture
def make_events():
    """Factory for deterministic audit events.

    Event i (starting at `start`) occurs i minutes after BASE_TIME, carries a
    small payload and the "dsr" flag on every tenth sequence.
    """

    def factory(count: int, start: int = 1, step: timedelta = timedelta(minutes=1)):
        return [
            AuditEvent(
                sequence=seq,
                occurred_at=BASE_TIME + step * (seq - 1),
                actor=f"user:{seq % 7}",
                action="update" if seq % 3 else "delete",
                resource=f"listing:{seq % 11}",
                payload=f'{{"field":"price","seq":{seq}}}'.encode(),
                compliance_flags=_flags_for(seq),
            )
            for seq in range(start, start + count)
        ]

    return factory


@pytest.fixture
def cutoff():
    """Cutoff later than every generated event."""
    return CUTOFF
