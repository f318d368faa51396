"""Configuration for the memory core.

One frozen dataclass per subsystem. Values are passed explicitly to
``configure()`` or to the component constructors; nothing is read from
the environment.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StoreConfig:
    """Memory store settings."""

    # Seconds before records expire in backends that support it; None keeps forever.
    ttl: int | None = None
    # Cosine similarity at or above which two texts count as the same memory.
    dedupe_threshold: float = 0.95
    key_prefix: str = "nocturne"


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings.

    ``dimensions`` must stay fixed for the lifetime of a store.
    """

    provider: str = "hash"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    dimensions: int = 384
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class GenerationConfig:
    """Generation model settings."""

    provider: str = "static"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.7
    max_tokens: int = 1024
    timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ChunkingConfig:
    """Knowledge chunking parameters, measured in whitespace tokens."""

    chunk_tokens: int = 512
    overlap_tokens: int = 64


@dataclass(frozen=True)
class RetrievalConfig:
    """Knowledge retrieval and reranking parameters."""

    # Candidates fetched per requested result, as reranking headroom.
    candidate_multiplier: int = 3
    # Reranking weights
    similarity_weight: float = 0.7
    keyword_weight: float = 0.3
    recency_weight: float = 0.0
    recency_half_life_seconds: float = 3600.0
    # Similarity floor and default result size
    threshold: float = 0.7
    count: int = 5
    # Sessions whose rotation state is kept before the least recent is dropped.
    max_sessions: int = 1024


@dataclass(frozen=True)
class ComposerConfig:
    """Context assembly parameters."""

    conversation_window: int = 20
    knowledge_count: int = 5
    # Randomized subset size drawn from passing knowledge; None disables rotation.
    knowledge_sample: int | None = None
    budget_chars: int = 8000
    provider_timeout_seconds: float = 2.0
    provider_header: str = "# Additional Information"


@dataclass(frozen=True)
class DispatcherConfig:
    """Action dispatch parameters."""

    apology_text: str = (
        "Forgive me, the candles guttered and I lost my thread. "
        "Could you ask me again?"
    )
    max_continuations: int = 3
    # Count CONTINUE runs through user messages instead of restarting on each one.
    continue_across_user_turns: bool = False
    max_chain_depth: int = 5
    cache_ttl_seconds: int = 900


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "nocturne_audit.jsonl"
    enabled: bool = True
