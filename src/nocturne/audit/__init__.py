"""Audit subsystem — async JSONL trail of conversational events."""

from nocturne.audit.schemas import AuditEvent
from nocturne.audit.schemas import AuditEventType
from nocturne.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
