"""Redis-backed memory backend.

Records are stored as JSON strings keyed by ``{prefix}:{table}:record:{id}``.
A sorted set ``{prefix}:{table}:room:{room_id}`` orders each room by
``created_at`` and ``{prefix}:{table}:all`` indexes the whole table.
A separate key ``{prefix}:{table}:owner:{id}`` remembers each record's
room so that ``delete()`` can clean the room index even after TTL expiry.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from nocturne.config import StoreConfig
from nocturne.errors import StoreUnavailableError
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.schemas import MemoryTable
from nocturne.memory.schemas import record_model

logger = logging.getLogger(__name__)

_PURGE_BATCH_SIZE = 100


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


@asynccontextmanager
async def _guard(operation: str) -> AsyncIterator[None]:
    """Translate Redis connectivity failures into ``StoreUnavailableError``."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        logger.error("redis unavailable during %s: %s", operation, exc)
        raise StoreUnavailableError(f"redis unavailable during {operation}") from exc


class RedisBackend:
    """Memory backend over ``redis.asyncio`` with optional TTL."""

    def __init__(self, redis: Redis, *, config: StoreConfig | None = None) -> None:
        self._redis = redis
        self._config = config or StoreConfig()

    @classmethod
    def from_url(cls, url: str, *, config: StoreConfig | None = None) -> RedisBackend:
        return cls(Redis.from_url(url), config=config)

    # -- keys --

    def _record_key(self, table: MemoryTable, record_id: str) -> str:
        return f"{self._config.key_prefix}:{table.value}:record:{record_id}"

    def _owner_key(self, table: MemoryTable, record_id: str) -> str:
        return f"{self._config.key_prefix}:{table.value}:owner:{record_id}"

    def _room_key(self, table: MemoryTable, room_id: str) -> str:
        return f"{self._config.key_prefix}:{table.value}:room:{room_id}"

    def _all_key(self, table: MemoryTable) -> str:
        return f"{self._config.key_prefix}:{table.value}:all"

    # -- write --

    async def put(self, record: MemoryRecord) -> None:
        table = record.table
        async with _guard("put"):
            pipe = self._redis.pipeline()
            pipe.set(
                self._record_key(table, record.id),
                record.model_dump_json(),
                ex=self._config.ttl,
            )
            pipe.set(self._owner_key(table, record.id), record.room_id)
            pipe.zadd(self._room_key(table, record.room_id), {record.id: record.created_at})
            pipe.zadd(self._all_key(table), {record.id: record.created_at})
            await pipe.execute()

    async def delete(self, table: MemoryTable, record_id: str) -> bool:
        async with _guard("delete"):
            room_raw = await self._redis.get(self._owner_key(table, record_id))
            pipe = self._redis.pipeline()
            pipe.delete(self._record_key(table, record_id))
            pipe.delete(self._owner_key(table, record_id))
            pipe.zrem(self._all_key(table), record_id)
            if room_raw is not None:
                pipe.zrem(self._room_key(table, _decode(room_raw)), record_id)
            results = await pipe.execute()
        return bool(results[0])

    async def purge_room(self, table: MemoryTable, room_id: str) -> int:
        room_key = self._room_key(table, room_id)
        async with _guard("purge_room"):
            ids = [_decode(raw) for raw in await self._redis.zrange(room_key, 0, -1)]
            removed = 0
            for start in range(0, len(ids), _PURGE_BATCH_SIZE):
                batch = ids[start : start + _PURGE_BATCH_SIZE]
                pipe = self._redis.pipeline()
                for record_id in batch:
                    pipe.delete(self._record_key(table, record_id))
                    pipe.delete(self._owner_key(table, record_id))
                pipe.zrem(self._all_key(table), *batch)
                results = await pipe.execute()
                removed += sum(1 for flag in results[0:-1:2] if flag)
            await self._redis.delete(room_key)
        return removed

    # -- read --

    async def get(self, table: MemoryTable, record_id: str) -> MemoryRecord | None:
        async with _guard("get"):
            raw = await self._redis.get(self._record_key(table, record_id))
        if raw is None:
            return None
        return record_model(table).model_validate_json(raw)

    async def recent(
        self, table: MemoryTable, room_id: str, limit: int
    ) -> list[MemoryRecord]:
        if limit <= 0:
            return []
        async with _guard("recent"):
            ids = await self._redis.zrevrange(self._room_key(table, room_id), 0, limit - 1)
            return await self._fetch(table, [_decode(raw) for raw in ids])

    async def candidates(
        self, table: MemoryTable, room_id: str | None = None
    ) -> list[MemoryRecord]:
        index_key = (
            self._all_key(table) if room_id is None else self._room_key(table, room_id)
        )
        async with _guard("candidates"):
            ids = await self._redis.zrevrange(index_key, 0, -1)
            return await self._fetch(table, [_decode(raw) for raw in ids])

    async def count(self, table: MemoryTable, room_id: str | None = None) -> int:
        index_key = (
            self._all_key(table) if room_id is None else self._room_key(table, room_id)
        )
        async with _guard("count"):
            return int(await self._redis.zcard(index_key))

    async def close(self) -> None:
        await self._redis.aclose()

    # -- internal --

    async def _fetch(self, table: MemoryTable, ids: list[str]) -> list[MemoryRecord]:
        """Batch-fetch records in *ids* order, pruning index entries that expired."""
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for record_id in ids:
            pipe.get(self._record_key(table, record_id))
        raw_results = await pipe.execute()

        model = record_model(table)
        stale_ids: list[str] = []
        records: list[MemoryRecord] = []
        for record_id, raw in zip(ids, raw_results):
            if raw is None:
                stale_ids.append(record_id)
            else:
                records.append(model.model_validate_json(raw))

        for record_id in stale_ids:
            await self.delete(table, record_id)
        return records
