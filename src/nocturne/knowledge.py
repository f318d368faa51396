"""Knowledge ingestion — overlapping chunking into unique knowledge items."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from dataclasses import field

from nocturne.config import ChunkingConfig
from nocturne.errors import DuplicateError
from nocturne.memory.schemas import Content
from nocturne.memory.schemas import KnowledgeItem
from nocturne.memory.schemas import MemoryTable
from nocturne.memory.store import MemoryStore

logger = logging.getLogger(__name__)


def chunk_text(text: str, chunk_tokens: int = 512, overlap_tokens: int = 64) -> list[str]:
    """Split *text* into whitespace-token windows sharing *overlap_tokens*.

    Each chunk after the first starts with the last *overlap_tokens*
    tokens of its predecessor.
    """
    if chunk_tokens < 1:
        raise ValueError("chunk_tokens must be >= 1")
    if not 0 <= overlap_tokens < chunk_tokens:
        raise ValueError("overlap_tokens must be >= 0 and smaller than chunk_tokens")

    tokens = text.split()
    if not tokens:
        return []

    step = chunk_tokens - overlap_tokens
    chunks: list[str] = []
    for start in range(0, len(tokens), step):
        chunks.append(" ".join(tokens[start : start + chunk_tokens]))
        if start + chunk_tokens >= len(tokens):
            break
    return chunks


@dataclass
class IngestResult:
    """Outcome of ingesting one document."""

    document_id: str
    created: list[str] = field(default_factory=list)
    skipped: int = 0


class KnowledgeIngestor:
    """Chunks documents and stores them in the knowledge table."""

    def __init__(self, store: MemoryStore, config: ChunkingConfig | None = None) -> None:
        if store.table is not MemoryTable.knowledge:
            raise ValueError("KnowledgeIngestor requires a knowledge-table store")
        self._store = store
        self._config = config or ChunkingConfig()

    async def ingest(
        self,
        text: str,
        *,
        agent_id: str,
        document_id: str | None = None,
        shared: bool = True,
        source: str | None = None,
    ) -> IngestResult:
        """Store every chunk of *text*; chunks already known are skipped."""
        document_id = document_id or f"doc_{uuid.uuid4().hex}"
        chunks = chunk_text(
            text,
            self._config.chunk_tokens,
            self._config.overlap_tokens,
        )
        result = IngestResult(document_id=document_id)
        # Shared knowledge lives in one room so deduplication spans agents.
        room_id = "knowledge:shared" if shared else f"knowledge:{agent_id}"
        for index, chunk in enumerate(chunks):
            metadata = {"source": source} if source else {}
            item = KnowledgeItem(
                agent_id=agent_id,
                user_id=agent_id,
                room_id=room_id,
                content=Content(text=chunk, metadata=metadata),
                shared=shared,
                document_id=document_id,
                chunk_index=index,
                chunk_total=len(chunks),
            )
            try:
                result.created.append(await self._store.create(item, unique=True))
            except DuplicateError:
                result.skipped += 1

        logger.info(
            "ingested document=%s chunks=%d created=%d skipped=%d",
            document_id,
            len(chunks),
            len(result.created),
            result.skipped,
        )
        return result
