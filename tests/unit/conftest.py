"""Unit test fixtures — in-process backend, deterministic embedders and stores."""

from __future__ import annotations

import math

import pytest

from nocturne.embedding import EmbeddingGateway
from nocturne.embedding import HashingEmbeddingAdapter
from nocturne.memory import InMemoryBackend
from nocturne.memory import MemoryStore
from nocturne.memory import MemoryTable
from nocturne.observability import reset_latency_metrics


class KeyedEmbedder:
    """Returns preset vectors per text and the zero vector otherwise."""

    def __init__(self, dimensions: int = 2) -> None:
        self.dimensions = dimensions
        self.vectors: dict[str, list[float]] = {}
        self.calls: list[str] = []

    def set(self, text: str, vector: list[float]) -> None:
        self.vectors[text] = vector

    def set_similarity(self, text: str, similarity: float) -> None:
        """Place *text* at *similarity* to the unit query axis ``[1, 0]``."""
        self.vectors[text] = [similarity, math.sqrt(1 - similarity**2)]

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return list(self.vectors.get(text, [0.0] * self.dimensions))


@pytest.fixture(autouse=True)
def _reset_latency():
    reset_latency_metrics()
    yield
    reset_latency_metrics()


@pytest.fixture()
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture()
def gateway() -> EmbeddingGateway:
    return EmbeddingGateway(HashingEmbeddingAdapter(64), dimensions=64)


@pytest.fixture()
def store(backend, gateway) -> MemoryStore:
    """Conversation-table store over the hashing embedder."""
    return MemoryStore(backend, gateway)


@pytest.fixture()
def keyed_embedder() -> KeyedEmbedder:
    return KeyedEmbedder()


@pytest.fixture()
def knowledge_store(backend, keyed_embedder) -> MemoryStore:
    """Knowledge-table store over the keyed embedder."""
    return MemoryStore(backend, keyed_embedder, table=MemoryTable.knowledge)


@pytest.fixture()
async def mcp_client(tmp_path):
    """Yield a FastMCP Client wired to a server over an in-process backend."""
    from fastmcp import Client

    from nocturne.config import AuditConfig
    from nocturne.engine.generation import StaticGenerationClient
    from nocturne.server import configure
    from nocturne.server import mcp
    from nocturne.server import shutdown

    await configure(
        backend=InMemoryBackend(),
        agent_id="vesper",
        providers=[],
        generation_client=StaticGenerationClient("Welcome to the abbey."),
        audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
    )

    async with Client(mcp) as client:
        yield client

    await shutdown()
