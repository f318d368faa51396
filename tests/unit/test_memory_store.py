"""Unit tests for MemoryStore over the in-process backend."""

from __future__ import annotations

import asyncio

import pytest

from nocturne.errors import DuplicateError
from nocturne.memory import InMemoryBackend
from nocturne.memory import MemoryStore
from nocturne.memory import MemoryTable
from nocturne.memory import create_memory_record
from nocturne.memory.schemas import Content
from nocturne.memory.schemas import KnowledgeItem
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.store import normalize_text
from nocturne.observability import latency_metrics_snapshot


def _msg(text: str, *, room: str = "room-1", user: str = "alice") -> MemoryRecord:
    return create_memory_record(text, agent_id="agent", user_id=user, room_id=room)


class _YieldingBackend(InMemoryBackend):
    """Gives up the event loop on reads, as a networked backend would."""

    async def recent(self, table, room_id, limit):
        await asyncio.sleep(0)
        return await super().recent(table, room_id, limit)

    async def count(self, table, room_id=None):
        await asyncio.sleep(0)
        return await super().count(table, room_id)


# ---------------------------------------------------------------------------
# create / list
# ---------------------------------------------------------------------------


class TestCreateAndList:
    async def test_create_then_list_round_trips(self, store):
        record = _msg("The bells toll at midnight.")
        record_id = await store.create(record)

        latest = await store.list("room-1", 1)
        assert len(latest) == 1
        assert latest[0].id == record_id
        assert latest[0].text == "The bells toll at midnight."

    async def test_create_fills_missing_embedding(self, store):
        record = _msg("candlelight")
        await store.create(record)

        stored = await store.get(record.id)
        assert stored is not None
        assert stored.embedding is not None
        assert len(stored.embedding) == 64

    async def test_create_does_not_mutate_caller_record(self, store):
        record = _msg("candlelight")
        await store.create(record)
        assert record.embedding is None

    async def test_create_keeps_supplied_embedding(self, backend, keyed_embedder):
        store = MemoryStore(backend, keyed_embedder)
        record = _msg("preset").model_copy(update={"embedding": [0.3, 0.4]})
        await store.create(record)

        assert keyed_embedder.calls == []
        stored = await store.get(record.id)
        assert stored.embedding == [0.3, 0.4]

    async def test_empty_text_is_not_embedded(self, backend, keyed_embedder):
        store = MemoryStore(backend, keyed_embedder)
        await store.create(_msg(""))
        assert keyed_embedder.calls == []

    async def test_record_takes_store_table(self, backend, gateway):
        lore = MemoryStore(backend, gateway, table=MemoryTable.lore)
        record_id = await lore.create(_msg("an old legend"))

        stored = await lore.get(record_id)
        assert stored.table is MemoryTable.lore
        assert await backend.get(MemoryTable.conversation, record_id) is None

    async def test_list_is_newest_first(self, store):
        for text in ("first", "second", "third"):
            await store.create(_msg(text))

        texts = [r.text for r in await store.list("room-1", 10)]
        assert texts == ["third", "second", "first"]

    async def test_list_respects_count(self, store):
        for i in range(5):
            await store.create(_msg(f"message {i}"))
        assert len(await store.list("room-1", 2)) == 2
        assert await store.list("room-1", 0) == []

    async def test_rooms_are_isolated(self, store):
        await store.create(_msg("in one", room="a"))
        await store.create(_msg("in two", room="b"))

        assert [r.text for r in await store.list("a", 10)] == ["in one"]
        assert [r.text for r in await store.list("b", 10)] == ["in two"]

    async def test_list_unique_collapses_repeated_text(self, store):
        await store.create(_msg("Hello"))
        await store.create(_msg("something else"))
        await store.create(_msg("  hello "))

        records = await store.list("room-1", 10, unique=True)
        assert [r.text for r in records] == ["  hello ", "something else"]

    async def test_created_at_strictly_increases(self, store):
        ids = [await store.create(_msg(f"tick {i}")) for i in range(20)]
        stamps = [(await store.get(i)).created_at for i in ids]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    async def test_create_records_latency(self, store):
        await store.create(_msg("measure me"))
        assert latency_metrics_snapshot()["memory_store.create"]["count"] == 1


# ---------------------------------------------------------------------------
# Uniqueness
# ---------------------------------------------------------------------------


class TestUniqueInsert:
    async def test_duplicate_text_raises_and_count_unchanged(self, store):
        await store.create(_msg("The abbey is haunted."), unique=True)
        before = await store.count("room-1")

        with pytest.raises(DuplicateError) as excinfo:
            await store.create(_msg("the abbey   is HAUNTED."), unique=True)

        assert excinfo.value.existing_id is not None
        assert await store.count("room-1") == before

    async def test_near_duplicate_embedding_rejected(self, backend, keyed_embedder):
        store = MemoryStore(backend, keyed_embedder)
        keyed_embedder.set("a", [1.0, 0.0])
        keyed_embedder.set("b", [0.99, 0.01])
        await store.create(_msg("a"), unique=True)

        with pytest.raises(DuplicateError):
            await store.create(_msg("b"), unique=True)

    async def test_same_text_in_other_room_is_allowed(self, store):
        await store.create(_msg("echo", room="a"), unique=True)
        await store.create(_msg("echo", room="b"), unique=True)
        assert await store.count() == 2

    async def test_non_unique_insert_allows_repeats(self, store):
        await store.create(_msg("again"))
        await store.create(_msg("again"))
        assert await store.count("room-1") == 2

    async def test_zero_vectors_only_collide_on_text(self, backend, keyed_embedder):
        store = MemoryStore(backend, keyed_embedder)
        await store.create(_msg("unembedded one"), unique=True)
        await store.create(_msg("unembedded two"), unique=True)
        assert await store.count("room-1") == 2

    async def test_unique_flag_persisted(self, store):
        record_id = await store.create(_msg("flagged"), unique=True)
        assert (await store.get(record_id)).unique is True

    async def test_concurrent_unique_inserts_keep_one(self, gateway):
        store = MemoryStore(_YieldingBackend(), gateway)

        results = await asyncio.gather(
            store.create(_msg("The bells ring at dusk."), unique=True),
            store.create(_msg("The bells ring at dusk."), unique=True),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, str)]
        rejected = [r for r in results if isinstance(r, DuplicateError)]
        assert len(created) == 1
        assert len(rejected) == 1
        assert rejected[0].existing_id == created[0]
        assert await store.count("room-1") == 1

    async def test_concurrent_unique_inserts_in_different_rooms(self, gateway):
        store = MemoryStore(_YieldingBackend(), gateway)
        await asyncio.gather(
            store.create(_msg("echo", room="a"), unique=True),
            store.create(_msg("echo", room="b"), unique=True),
        )
        assert await store.count() == 2


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------


class TestSearchBySimilarity:
    async def test_threshold_is_strict(self, knowledge_store, keyed_embedder):
        keyed_embedder.set("exact", [1.0, 0.0])
        await knowledge_store.create(_msg("exact"))

        assert await knowledge_store.search_by_similarity([1.0, 0.0], threshold=1.0) == []
        matches = await knowledge_store.search_by_similarity([1.0, 0.0], threshold=0.99)
        assert [r.text for r, _ in matches] == ["exact"]

    async def test_ordered_by_similarity(self, knowledge_store, keyed_embedder):
        for text, sim in (("low", 0.3), ("high", 0.9), ("mid", 0.6)):
            keyed_embedder.set_similarity(text, sim)
            await knowledge_store.create(_msg(text))

        matches = await knowledge_store.search_by_similarity([1.0, 0.0], threshold=0.0)
        assert [r.text for r, _ in matches] == ["high", "mid", "low"]
        assert matches[0][1] == pytest.approx(0.9, abs=1e-5)

    async def test_ties_prefer_newest(self, knowledge_store, keyed_embedder):
        keyed_embedder.set_similarity("older", 0.8)
        keyed_embedder.set_similarity("newer", 0.8)
        await knowledge_store.create(_msg("older"))
        await knowledge_store.create(_msg("newer"))

        matches = await knowledge_store.search_by_similarity([1.0, 0.0], threshold=0.1)
        assert [r.text for r, _ in matches] == ["newer", "older"]

    async def test_zero_vector_records_never_match(self, knowledge_store):
        await knowledge_store.create(_msg("embedding failed for this one"))
        matches = await knowledge_store.search_by_similarity([1.0, 0.0], threshold=0.01)
        assert matches == []

    async def test_zero_query_matches_nothing(self, knowledge_store, keyed_embedder):
        keyed_embedder.set_similarity("stored", 0.9)
        await knowledge_store.create(_msg("stored"))
        assert await knowledge_store.search_by_similarity([0.0, 0.0]) == []

    async def test_count_bounds_results(self, knowledge_store, keyed_embedder):
        for i in range(5):
            keyed_embedder.set_similarity(f"t{i}", 0.9)
            await knowledge_store.create(_msg(f"t{i}"))
        matches = await knowledge_store.search_by_similarity([1.0, 0.0], count=2)
        assert len(matches) == 2

    async def test_room_filter(self, knowledge_store, keyed_embedder):
        keyed_embedder.set_similarity("here", 0.9)
        keyed_embedder.set_similarity("there", 0.9)
        await knowledge_store.create(_msg("here", room="a"))
        await knowledge_store.create(_msg("there", room="b"))

        matches = await knowledge_store.search_by_similarity([1.0, 0.0], room_id="a")
        assert [r.text for r, _ in matches] == ["here"]

    async def test_agent_filter_admits_owned_and_shared(
        self, knowledge_store, keyed_embedder
    ):
        for text in ("mine", "shared", "private"):
            keyed_embedder.set_similarity(text, 0.9)
        await knowledge_store.create(
            KnowledgeItem(agent_id="me", user_id="me", room_id="k", content=Content(text="mine"))
        )
        await knowledge_store.create(
            KnowledgeItem(
                agent_id="other",
                user_id="other",
                room_id="k",
                content=Content(text="shared"),
                shared=True,
            )
        )
        await knowledge_store.create(
            KnowledgeItem(
                agent_id="other", user_id="other", room_id="k", content=Content(text="private")
            )
        )

        matches = await knowledge_store.search_by_similarity([1.0, 0.0], agent_id="me")
        assert sorted(r.text for r, _ in matches) == ["mine", "shared"]

    async def test_backend_without_vector_index_returns_empty(self, keyed_embedder):
        store = MemoryStore(
            InMemoryBackend(vector_index=False),
            keyed_embedder,
            table=MemoryTable.knowledge,
        )
        keyed_embedder.set_similarity("stored", 0.9)
        await store.create(_msg("stored"))
        assert await store.search_by_similarity([1.0, 0.0]) == []


# ---------------------------------------------------------------------------
# remove / purge / count
# ---------------------------------------------------------------------------


class TestRemoval:
    async def test_remove_returns_whether_record_existed(self, store):
        record_id = await store.create(_msg("short-lived"))
        assert await store.remove(record_id) is True
        assert await store.remove(record_id) is False
        assert await store.get(record_id) is None

    async def test_purge_room_is_idempotent(self, store):
        for i in range(3):
            await store.create(_msg(f"m{i}"))
        await store.create(_msg("survivor", room="other"))

        assert await store.purge_room("room-1") == 3
        assert await store.purge_room("room-1") == 0
        assert await store.count("room-1") == 0
        assert await store.count("other") == 1

    async def test_count_whole_table(self, store):
        await store.create(_msg("a", room="x"))
        await store.create(_msg("b", room="y"))
        assert await store.count() == 2


def test_normalize_text():
    assert normalize_text("  Hello\n  World ") == "hello world"
