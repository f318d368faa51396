"""Memory domain — typed records, backends and the memory store."""

from __future__ import annotations

from typing import Any

from nocturne.memory.backend import InMemoryBackend
from nocturne.memory.backend import MemoryBackend
from nocturne.memory.redis_backend import RedisBackend
from nocturne.memory.schemas import Content
from nocturne.memory.schemas import KnowledgeItem
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.schemas import MemoryTable
from nocturne.memory.store import MemoryStore

__all__ = [
    "Content",
    "InMemoryBackend",
    "KnowledgeItem",
    "MemoryBackend",
    "MemoryRecord",
    "MemoryStore",
    "MemoryTable",
    "RedisBackend",
    "create_memory_record",
]


def create_memory_record(
    text: str,
    *,
    agent_id: str,
    user_id: str,
    room_id: str,
    table: MemoryTable = MemoryTable.conversation,
    action: str | None = None,
    attachments: list[dict[str, Any]] | None = None,
    metadata: dict[str, Any] | None = None,
) -> MemoryRecord:
    """Build a conversational MemoryRecord from plain arguments."""
    return MemoryRecord(
        agent_id=agent_id,
        user_id=user_id,
        room_id=room_id,
        table=table,
        content=Content(
            text=text,
            action=action,
            attachments=list(attachments or []),
            metadata=dict(metadata or {}),
        ),
    )
