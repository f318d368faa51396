"""Embedding gateway — text to fixed-dimension vectors.

The gateway never raises: empty text, adapter failures and vectors of the
wrong size all degrade to the zero vector, which similarity search treats
as matching nothing.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from collections.abc import Sequence
from time import perf_counter
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

import numpy as np

from nocturne.config import EmbeddingConfig
from nocturne.errors import EmbeddingError
from nocturne.observability import record_latency

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")

# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------


def zero_vector(dimensions: int) -> list[float]:
    """Return the degraded-state sentinel for *dimensions*."""
    return [0.0] * dimensions


def is_zero_vector(vector: Sequence[float] | None) -> bool:
    """True for missing vectors and vectors with no non-zero component."""
    if not vector:
        return True
    return not np.any(np.asarray(vector, dtype=np.float32))


def cosine_similarity(a: Sequence[float] | None, b: Sequence[float] | None) -> float:
    """Cosine similarity, defined as 0.0 against zero or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    a_arr = np.asarray(a, dtype=np.float32)
    b_arr = np.asarray(b, dtype=np.float32)
    norm_a = np.linalg.norm(a_arr)
    norm_b = np.linalg.norm(b_arr)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_arr, b_arr) / (norm_a * norm_b))


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


@runtime_checkable
class EmbeddingAdapter(Protocol):
    """Protocol for embedding provider adapters."""

    async def embed(self, text: str) -> list[float]: ...


class HashingEmbeddingAdapter(EmbeddingAdapter):
    """Deterministic local adapter using signed feature hashing.

    Needs no network access; texts sharing vocabulary land close together,
    which is enough for deduplication and keyword-flavoured retrieval.
    """

    def __init__(self, dimensions: int = 384) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self._dimensions = dimensions

    async def embed(self, text: str) -> list[float]:
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for token in _WORD_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = np.linalg.norm(vector)
        if norm == 0:
            return zero_vector(self._dimensions)
        return (vector / norm).tolist()


class OpenAICompatibleEmbeddingAdapter(EmbeddingAdapter):
    """OpenAI-compatible ``/embeddings`` adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        dimensions: int | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._dimensions = dimensions
        self._timeout = timeout_seconds

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text)

    def _embed_sync(self, text: str) -> list[float]:
        payload: dict = {"model": self._model, "input": text}
        if self._dimensions is not None:
            payload["dimensions"] = self._dimensions
        request = Request(
            url=f"{self._base_url}/embeddings",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise EmbeddingError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise EmbeddingError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise EmbeddingError(f"provider IO error: {exc}") from exc

        try:
            vector = json.loads(raw)["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingError("provider response missing data[0].embedding") from exc
        if not isinstance(vector, list):
            raise EmbeddingError("provider embedding must be a list of floats")
        return [float(value) for value in vector]


def build_embedding_adapter(config: EmbeddingConfig) -> EmbeddingAdapter:
    """Create a concrete adapter from ``EmbeddingConfig``."""
    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleEmbeddingAdapter(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            dimensions=config.dimensions,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "hash":
        return HashingEmbeddingAdapter(config.dimensions)
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, hash."
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class EmbeddingGateway:
    """Single entry point for embeddings with a fixed dimensionality."""

    def __init__(self, adapter: EmbeddingAdapter, *, dimensions: int) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self._adapter = adapter
        self._dimensions = dimensions

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> EmbeddingGateway:
        return cls(build_embedding_adapter(config), dimensions=config.dimensions)

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        """Embed *text*, returning the zero vector on any upstream failure."""
        if not text or not text.strip():
            return zero_vector(self._dimensions)

        start = perf_counter()
        ok = False
        try:
            vector = await self._adapter.embed(text)
            ok = True
        except Exception:
            logger.exception("embedding adapter failed; storing zero vector")
            return zero_vector(self._dimensions)
        finally:
            record_latency(
                operation="embedding.embed",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

        if len(vector) != self._dimensions:
            logger.warning(
                "embedding dimension mismatch expected=%d got=%d; storing zero vector",
                self._dimensions,
                len(vector),
            )
            return zero_vector(self._dimensions)
        return vector
