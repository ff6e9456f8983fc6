"""
Live audit event store adapters.

The archiver only talks to the EventSource protocol:
- InMemoryEventSource: tests and local development
- SQLiteEventSource: durable single-file store
"""

from .base import MAX_PAYLOAD_BYTES, AuditEvent, EventPage, EventSource
from .memory import InMemoryEventSource
from .sqlite import SQLiteEventSource

__all__ = [
    "MAX_PAYLOAD_BYTES",
    "AuditEvent",
    "EventPage",
    "EventSource",
    "InMemoryEventSource",
    "SQLiteEventSource",
]
