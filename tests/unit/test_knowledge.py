"""Unit tests for knowledge chunking and ingestion."""

from __future__ import annotations

import pytest

from nocturne.config import ChunkingConfig
from nocturne.knowledge import KnowledgeIngestor
from nocturne.knowledge import chunk_text
from nocturne.memory import MemoryStore
from nocturne.memory import MemoryTable
from nocturne.memory.schemas import KnowledgeItem


def _words(n: int, prefix: str = "w") -> str:
    return " ".join(f"{prefix}{i}" for i in range(n))


class TestChunkText:
    def test_short_text_is_one_chunk(self):
        assert chunk_text("a b c", chunk_tokens=10, overlap_tokens=2) == ["a b c"]

    def test_empty_text_has_no_chunks(self):
        assert chunk_text("   \n ") == []

    def test_chunks_overlap(self):
        chunks = chunk_text(_words(10), chunk_tokens=4, overlap_tokens=1)
        assert chunks == [
            "w0 w1 w2 w3",
            "w3 w4 w5 w6",
            "w6 w7 w8 w9",
        ]

    def test_every_token_is_covered(self):
        text = _words(1000)
        chunks = chunk_text(text, chunk_tokens=512, overlap_tokens=64)
        covered = set()
        for chunk in chunks:
            covered.update(chunk.split())
        assert covered == set(text.split())
        assert all(len(c.split()) <= 512 for c in chunks)

    def test_no_overlap(self):
        assert chunk_text(_words(4), chunk_tokens=2, overlap_tokens=0) == [
            "w0 w1",
            "w2 w3",
        ]

    @pytest.mark.parametrize(("size", "overlap"), [(0, 0), (4, 4), (4, -1)])
    def test_rejects_invalid_sizes(self, size, overlap):
        with pytest.raises(ValueError):
            chunk_text("a b c", chunk_tokens=size, overlap_tokens=overlap)


class TestKnowledgeIngestor:
    @pytest.fixture()
    def ingestor(self, backend, gateway) -> KnowledgeIngestor:
        store = MemoryStore(backend, gateway, table=MemoryTable.knowledge)
        return KnowledgeIngestor(store, ChunkingConfig(chunk_tokens=4, overlap_tokens=1))

    async def test_creates_one_item_per_chunk(self, ingestor, backend):
        result = await ingestor.ingest(
            _words(10), agent_id="agent", document_id="doc-1", source="grimoire"
        )

        assert result.document_id == "doc-1"
        assert len(result.created) == 3
        assert result.skipped == 0

        item = await backend.get(MemoryTable.knowledge, result.created[1])
        assert isinstance(item, KnowledgeItem)
        assert item.document_id == "doc-1"
        assert item.chunk_index == 1
        assert item.chunk_total == 3
        assert item.shared is True
        assert item.room_id == "knowledge:shared"
        assert item.content.metadata == {"source": "grimoire"}

    async def test_reingesting_skips_known_chunks(self, ingestor, backend):
        await ingestor.ingest(_words(10), agent_id="agent")
        again = await ingestor.ingest(_words(10), agent_id="agent")

        assert again.created == []
        assert again.skipped == 3
        assert await backend.count(MemoryTable.knowledge) == 3

    async def test_private_knowledge_uses_agent_room(self, ingestor, backend):
        result = await ingestor.ingest("a secret", agent_id="agent", shared=False)
        item = await backend.get(MemoryTable.knowledge, result.created[0])
        assert item.room_id == "knowledge:agent"
        assert item.shared is False

    async def test_generates_document_id(self, ingestor):
        result = await ingestor.ingest("a b", agent_id="agent")
        assert result.document_id.startswith("doc_")

    def test_requires_knowledge_store(self, store):
        with pytest.raises(ValueError, match="knowledge-table"):
            KnowledgeIngestor(store)
