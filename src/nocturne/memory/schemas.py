"""Memory domain data models."""

from __future__ import annotations

import threading
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


class MemoryTable(str, Enum):
    """Logical partitions of the memory store."""

    conversation = "conversation"
    lore = "lore"
    knowledge = "knowledge"
    profile = "profile"


_clock_lock = threading.Lock()
_last_timestamp = 0.0


def next_timestamp() -> float:
    """Return a wall-clock timestamp strictly greater than the previous one.

    ``created_at`` is the only recency authority, so two records created
    in the same clock tick must still be ordered.
    """
    global _last_timestamp
    with _clock_lock:
        now = time.time()
        if now <= _last_timestamp:
            now = _last_timestamp + 1e-6
        _last_timestamp = now
        return now


class Content(BaseModel):
    """Payload of a memory record."""

    text: str = Field(
        default="",
        description="Primary text of the message or fragment.",
    )
    action: str | None = Field(
        default=None,
        description="Action completed alongside this response, if any.",
    )
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Attachment descriptors (url, title, mime type).",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary key-value metadata.",
    )


class MemoryRecord(BaseModel):
    """Atomic persisted unit of conversational or knowledge content."""

    id: str = Field(
        default_factory=lambda: f"mem_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    agent_id: str = Field(
        description="Agent that owns this record.",
    )
    user_id: str = Field(
        description="Author of the content (the agent id for agent responses).",
    )
    room_id: str = Field(
        description="Conversation partition; rooms never share recency windows.",
    )
    table: MemoryTable = Field(
        default=MemoryTable.conversation,
        description="Logical table the record belongs to.",
    )
    content: Content = Field(
        default_factory=Content,
        description="Structured payload.",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Vector for similarity search; an all-zero vector marks a failed embedding.",
    )
    created_at: float = Field(
        default_factory=next_timestamp,
        description="Unix epoch of creation, strictly increasing per process.",
    )
    unique: bool = Field(
        default=False,
        description="Whether the record was inserted under the unique constraint.",
    )

    @property
    def text(self) -> str:
        return self.content.text


class KnowledgeItem(MemoryRecord):
    """A chunk of a knowledge document."""

    table: MemoryTable = MemoryTable.knowledge
    shared: bool = Field(
        default=False,
        description="Visible to every agent when true, otherwise to the owner only.",
    )
    document_id: str | None = Field(
        default=None,
        description="Identifier of the source document.",
    )
    chunk_index: int = Field(
        default=0,
        description="Position of this chunk within its document.",
    )
    chunk_total: int = Field(
        default=1,
        description="Number of chunks the document was split into.",
    )


def record_model(table: MemoryTable) -> type[MemoryRecord]:
    """Return the model class used to deserialize records of *table*."""
    if table is MemoryTable.knowledge:
        return KnowledgeItem
    return MemoryRecord
