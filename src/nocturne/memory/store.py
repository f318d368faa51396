"""Memory store — typed record storage with lazy embeddings and similarity search."""

from __future__ import annotations

import asyncio
import logging
import re
import weakref
from contextlib import AbstractAsyncContextManager
from contextlib import nullcontext
from time import perf_counter
from typing import Protocol

from nocturne.config import StoreConfig
from nocturne.embedding import cosine_similarity
from nocturne.embedding import is_zero_vector
from nocturne.errors import DuplicateError
from nocturne.errors import RetrievalUnavailable
from nocturne.memory.backend import MemoryBackend
from nocturne.memory.schemas import KnowledgeItem
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.schemas import MemoryTable
from nocturne.observability import record_latency

logger = logging.getLogger(__name__)

_SPACE_RE = re.compile(r"\s+")


class Embedder(Protocol):
    """Anything that turns text into a vector without raising."""

    async def embed(self, text: str) -> list[float]: ...


def normalize_text(text: str) -> str:
    """Casefold and collapse whitespace for duplicate detection."""
    return _SPACE_RE.sub(" ", text).strip().casefold()


def _visible_to(record: MemoryRecord, agent_id: str) -> bool:
    if record.agent_id == agent_id:
        return True
    return isinstance(record, KnowledgeItem) and record.shared


class MemoryStore:
    """One logical table of the memory store.

    Records are append-only: they are created, read and deleted, never
    updated, except that a missing embedding is filled at creation time.
    """

    def __init__(
        self,
        backend: MemoryBackend,
        embedder: Embedder,
        *,
        table: MemoryTable = MemoryTable.conversation,
        config: StoreConfig | None = None,
    ) -> None:
        self._backend = backend
        self._embedder = embedder
        self._table = table
        self._config = config or StoreConfig()
        # One lock per room while a unique insert is in flight.
        self._room_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def table(self) -> MemoryTable:
        return self._table

    # -- write --

    async def create(self, record: MemoryRecord, *, unique: bool = False) -> str:
        """Persist *record* and return its ID.

        Raises ``DuplicateError`` when *unique* is set and the room already
        holds the same text or a near-identical embedding. Unique inserts
        into one room are serialized through this store, so concurrent
        callers sharing it cannot both pass the duplicate check.
        """
        start = perf_counter()
        ok = False
        try:
            record = record.model_copy(update={"table": self._table, "unique": unique})
            if record.embedding is None and record.text.strip():
                record.embedding = await self._embedder.embed(record.text)

            async with self._insert_guard(record.room_id, unique):
                if unique:
                    existing = await self._find_duplicate(record)
                    if existing is not None:
                        logger.info(
                            "duplicate memory rejected table=%s room=%s existing=%s",
                            self._table.value,
                            record.room_id,
                            existing.id,
                        )
                        raise DuplicateError(
                            f"memory already exists in room {record.room_id}",
                            existing_id=existing.id,
                        )
                await self._backend.put(record)
            ok = True
            return record.id
        finally:
            record_latency(
                operation="memory_store.create",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def remove(self, record_id: str) -> bool:
        """Hard-delete one record. Returns whether it existed."""
        return await self._backend.delete(self._table, record_id)

    async def purge_room(self, room_id: str) -> int:
        """Hard-delete every record of *room_id* in this table. Idempotent."""
        removed = await self._backend.purge_room(self._table, room_id)
        logger.info(
            "purged room table=%s room=%s removed=%d",
            self._table.value,
            room_id,
            removed,
        )
        return removed

    # -- read --

    async def get(self, record_id: str) -> MemoryRecord | None:
        return await self._backend.get(self._table, record_id)

    async def list(
        self, room_id: str, count: int = 10, *, unique: bool = False
    ) -> list[MemoryRecord]:
        """Return up to *count* records of *room_id*, newest first.

        With *unique*, repeated texts collapse onto their most recent
        occurrence before the bound is applied.
        """
        if count <= 0:
            return []
        if not unique:
            return await self._backend.recent(self._table, room_id, count)

        total = await self._backend.count(self._table, room_id)
        seen: set[str] = set()
        results: list[MemoryRecord] = []
        for record in await self._backend.recent(self._table, room_id, total):
            key = normalize_text(record.text)
            if key in seen:
                continue
            seen.add(key)
            results.append(record)
            if len(results) >= count:
                break
        return results

    async def search_by_similarity(
        self,
        embedding: list[float],
        *,
        room_id: str | None = None,
        threshold: float = 0.0,
        count: int = 10,
        agent_id: str | None = None,
    ) -> list[tuple[MemoryRecord, float]]:
        """Return ``(record, similarity)`` pairs scoring strictly above *threshold*.

        Ordered by similarity, ties broken by the newest ``created_at``.
        A backend without a vector index yields an empty list.
        """
        start = perf_counter()
        ok = False
        try:
            if count <= 0 or is_zero_vector(embedding):
                ok = True
                return []
            try:
                candidates = await self._backend.candidates(self._table, room_id)
            except RetrievalUnavailable:
                logger.warning(
                    "vector search unavailable table=%s; returning no matches",
                    self._table.value,
                )
                ok = True
                return []

            scored: list[tuple[MemoryRecord, float]] = []
            for record in candidates:
                if agent_id is not None and not _visible_to(record, agent_id):
                    continue
                similarity = cosine_similarity(embedding, record.embedding)
                if similarity > threshold:
                    scored.append((record, similarity))

            scored.sort(key=lambda pair: (pair[1], pair[0].created_at), reverse=True)
            ok = True
            return scored[:count]
        finally:
            record_latency(
                operation="memory_store.search",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def count(self, room_id: str | None = None) -> int:
        """Number of records in *room_id*, or in the whole table."""
        return await self._backend.count(self._table, room_id)

    # -- internal --

    def _insert_guard(
        self, room_id: str, unique: bool
    ) -> AbstractAsyncContextManager[object]:
        if not unique:
            return nullcontext()
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._room_locks[room_id] = lock
        return lock

    async def _find_duplicate(self, record: MemoryRecord) -> MemoryRecord | None:
        key = normalize_text(record.text)
        threshold = self._config.dedupe_threshold
        total = await self._backend.count(self._table, record.room_id)
        for existing in await self._backend.recent(self._table, record.room_id, total):
            if key and normalize_text(existing.text) == key:
                return existing
            # Zero vectors score 0 and so only ever match on exact text.
            if cosine_similarity(record.embedding, existing.embedding) >= threshold:
                return existing
        return None
