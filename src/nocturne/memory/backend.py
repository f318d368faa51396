"""Backing-store protocol and the in-process backend."""

from __future__ import annotations

import asyncio
from typing import Protocol

from nocturne.errors import RetrievalUnavailable
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.schemas import MemoryTable


class MemoryBackend(Protocol):
    """Append-only record storage partitioned by table and room.

    Implementations raise ``StoreUnavailableError`` when they cannot reach
    their storage and ``RetrievalUnavailable`` from ``candidates`` when
    they keep no vectors to search.
    """

    async def put(self, record: MemoryRecord) -> None: ...

    async def get(self, table: MemoryTable, record_id: str) -> MemoryRecord | None: ...

    async def delete(self, table: MemoryTable, record_id: str) -> bool: ...

    async def recent(
        self, table: MemoryTable, room_id: str, limit: int
    ) -> list[MemoryRecord]: ...

    async def candidates(
        self, table: MemoryTable, room_id: str | None = None
    ) -> list[MemoryRecord]: ...

    async def purge_room(self, table: MemoryTable, room_id: str) -> int: ...

    async def count(self, table: MemoryTable, room_id: str | None = None) -> int: ...

    async def close(self) -> None: ...


class InMemoryBackend:
    """Dict-backed backend for tests, notebooks and single-process agents.

    Pass ``vector_index=False`` to model a key-value store without vector
    search support.
    """

    def __init__(self, *, vector_index: bool = True) -> None:
        self._vector_index = vector_index
        self._records: dict[MemoryTable, dict[str, MemoryRecord]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: MemoryTable) -> dict[str, MemoryRecord]:
        return self._records.setdefault(table, {})

    async def put(self, record: MemoryRecord) -> None:
        async with self._lock:
            self._table(record.table)[record.id] = record.model_copy(deep=True)

    async def get(self, table: MemoryTable, record_id: str) -> MemoryRecord | None:
        record = self._table(table).get(record_id)
        return record.model_copy(deep=True) if record else None

    async def delete(self, table: MemoryTable, record_id: str) -> bool:
        async with self._lock:
            return self._table(table).pop(record_id, None) is not None

    async def recent(
        self, table: MemoryTable, room_id: str, limit: int
    ) -> list[MemoryRecord]:
        if limit <= 0:
            return []
        in_room = [r for r in self._table(table).values() if r.room_id == room_id]
        in_room.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in in_room[:limit]]

    async def candidates(
        self, table: MemoryTable, room_id: str | None = None
    ) -> list[MemoryRecord]:
        if not self._vector_index:
            raise RetrievalUnavailable("in-memory backend built without vector index")
        return [
            r.model_copy(deep=True)
            for r in self._table(table).values()
            if room_id is None or r.room_id == room_id
        ]

    async def purge_room(self, table: MemoryTable, room_id: str) -> int:
        async with self._lock:
            records = self._table(table)
            doomed = [rid for rid, r in records.items() if r.room_id == room_id]
            for rid in doomed:
                del records[rid]
            return len(doomed)

    async def count(self, table: MemoryTable, room_id: str | None = None) -> int:
        records = self._table(table).values()
        if room_id is None:
            return len(records)
        return sum(1 for r in records if r.room_id == room_id)

    async def close(self) -> None:
        return None
