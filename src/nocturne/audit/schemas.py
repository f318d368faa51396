"""Audit event types and data models."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class AuditEventType(str, Enum):
    """Categories of auditable events."""

    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    RESPONSE_SENT = "RESPONSE_SENT"
    ACTION_DISPATCHED = "ACTION_DISPATCHED"
    ACTION_FAILED = "ACTION_FAILED"
    KNOWLEDGE_INGESTED = "KNOWLEDGE_INGESTED"
    MEMORY_REMOVED = "MEMORY_REMOVED"
    ROOM_PURGED = "ROOM_PURGED"


class AuditEvent(BaseModel):
    """A single immutable audit log entry."""

    model_config = {"frozen": True}

    timestamp: float = Field(
        default_factory=time.time,
        description="Unix epoch when the event occurred.",
    )
    event_type: AuditEventType = Field(
        description="Category of the audited event.",
    )
    room_id: str | None = Field(
        default=None,
        description="Room the event belongs to, when it has one.",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data.",
    )
