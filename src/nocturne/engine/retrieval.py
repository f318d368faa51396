"""Retrieval engine — semantic search reranked by term overlap and recency."""

from __future__ import annotations

import logging
import math
import random
import re
import time
from collections import OrderedDict
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from time import perf_counter
from typing import Protocol

from nocturne.config import RetrievalConfig
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.store import Embedder
from nocturne.memory.store import MemoryStore
from nocturne.observability import record_latency

logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[a-z0-9]+")


def _tokenize(text: str) -> set[str]:
    """Extract lowercase alphanumeric tokens from *text*."""
    return set(_WORD_RE.findall(text.lower()))


@dataclass(frozen=True)
class RetrievedFragment:
    """A knowledge record with its raw similarity and reranked score."""

    record: MemoryRecord
    similarity: float
    score: float

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def text(self) -> str:
        return self.record.text


class RetrievalScorer(Protocol):
    """Scores a similarity-search candidate for reranking."""

    def score(
        self, query: str, record: MemoryRecord, similarity: float, *, now: float
    ) -> float: ...


@dataclass(frozen=True)
class WeightedRelevanceScorer:
    """Linear blend of vector similarity, query-term overlap and recency decay."""

    similarity_weight: float = 0.7
    keyword_weight: float = 0.3
    recency_weight: float = 0.0
    recency_half_life_seconds: float = 3600.0

    @classmethod
    def from_config(cls, config: RetrievalConfig) -> WeightedRelevanceScorer:
        return cls(
            similarity_weight=config.similarity_weight,
            keyword_weight=config.keyword_weight,
            recency_weight=config.recency_weight,
            recency_half_life_seconds=config.recency_half_life_seconds,
        )

    def score(
        self, query: str, record: MemoryRecord, similarity: float, *, now: float
    ) -> float:
        total = self.similarity_weight * similarity
        if self.keyword_weight:
            total += self.keyword_weight * keyword_overlap(query, record.text)
        if self.recency_weight and self.recency_half_life_seconds > 0:
            age = max(now - record.created_at, 0.0)
            decay = math.exp(-math.log(2) * age / self.recency_half_life_seconds)
            total += self.recency_weight * decay
        return total


def keyword_overlap(query: str, text: str) -> float:
    """Share of query terms present in *text*, in ``[0, 1]``."""
    query_words = _tokenize(query)
    if not query_words:
        return 0.0
    return len(query_words & _tokenize(text)) / len(query_words)


class FragmentRotation:
    """Per-session memory of fragments already shown.

    Selection draws from unseen fragments first and tops up from seen ones;
    once every candidate has been seen the session starts over. At most
    *max_sessions* sessions are remembered; the least recently used one is
    forgotten first.
    """

    def __init__(
        self, rng: random.Random | None = None, *, max_sessions: int = 1024
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self._rng = rng or random.Random()
        self._max_sessions = max_sessions
        self._seen: OrderedDict[str, set[str]] = OrderedDict()

    def select(
        self, session_id: str, fragments: Sequence[RetrievedFragment], k: int
    ) -> list[RetrievedFragment]:
        if k <= 0 or not fragments:
            return []
        seen = self._session(session_id)
        unseen = [f for f in fragments if f.id not in seen]
        if not unseen:
            seen.clear()
            unseen = list(fragments)

        picked = self._rng.sample(unseen, min(k, len(unseen)))
        if len(picked) < k:
            picked_ids = {f.id for f in picked}
            rest = [f for f in fragments if f.id not in picked_ids]
            picked.extend(self._rng.sample(rest, min(k - len(picked), len(rest))))

        seen.update(f.id for f in picked)
        order = {f.id: index for index, f in enumerate(fragments)}
        picked.sort(key=lambda f: order[f.id])
        return picked

    def _session(self, session_id: str) -> set[str]:
        seen = self._seen.get(session_id)
        if seen is None:
            seen = self._seen[session_id] = set()
            while len(self._seen) > self._max_sessions:
                evicted, _ = self._seen.popitem(last=False)
                logger.debug("rotation forgot session=%s", evicted)
        else:
            self._seen.move_to_end(session_id)
        return seen

    def seen(self, session_id: str) -> frozenset[str]:
        return frozenset(self._seen.get(session_id, ()))

    def reset(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._seen.clear()
        else:
            self._seen.pop(session_id, None)


class RetrievalEngine:
    """Ranks knowledge fragments for a query."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: Embedder,
        *,
        scorer: RetrievalScorer | None = None,
        config: RetrievalConfig | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._scorer = scorer or WeightedRelevanceScorer.from_config(self._config)
        self._rotation = FragmentRotation(rng, max_sessions=self._config.max_sessions)
        self._clock = clock or time.time

    async def retrieve(
        self,
        query: str,
        *,
        session_id: str | None = None,
        agent_id: str | None = None,
        count: int | None = None,
        threshold: float | None = None,
        sample: int | None = None,
    ) -> list[RetrievedFragment]:
        """Return up to *count* fragments above the similarity floor.

        With *sample* and a *session_id*, a randomized subset of at most
        *sample* fragments is drawn from everything that passed the floor,
        preferring ones the session has not seen yet.
        """
        start = perf_counter()
        ok = False
        count = self._config.count if count is None else count
        floor = self._config.threshold if threshold is None else threshold
        try:
            if count <= 0 or not query.strip():
                ok = True
                return []

            embedding = await self._embedder.embed(query)
            headroom = max(count * self._config.candidate_multiplier, count)
            matches = await self._store.search_by_similarity(
                embedding,
                threshold=floor,
                count=headroom,
                agent_id=agent_id,
            )

            now = self._clock()
            ranked = [
                RetrievedFragment(
                    record=record,
                    similarity=similarity,
                    score=self._scorer.score(query, record, similarity, now=now),
                )
                for record, similarity in matches
            ]
            ranked.sort(key=lambda f: (f.score, f.record.created_at), reverse=True)
            if sample is not None and session_id is not None:
                ranked = self._rotation.select(session_id, ranked, min(sample, count))
            else:
                ranked = ranked[:count]

            logger.debug(
                "retrieved query=%r candidates=%d returned=%d",
                query[:50],
                len(matches),
                len(ranked),
            )
            ok = True
            return ranked
        finally:
            record_latency(
                operation="retrieval_engine.retrieve",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    def reset_session(self, session_id: str) -> None:
        """Forget which fragments *session_id* has already been shown."""
        self._rotation.reset(session_id)

    def seen_fragments(self, session_id: str) -> frozenset[str]:
        """Expose the rotation's seen-set (for tests/introspection)."""
        return self._rotation.seen(session_id)
