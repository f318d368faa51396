"""Nocturne — FastMCP server exposing the conversational memory core.

Tools delegate to one ``AgentRuntime`` and to the per-table memory
stores it shares a backend with. Call ``configure(...)`` before using
the server.
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from time import perf_counter

from fastmcp import FastMCP
from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from nocturne.audit import AuditEventType
from nocturne.audit import AuditLogger
from nocturne.config import AuditConfig
from nocturne.config import ChunkingConfig
from nocturne.config import ComposerConfig
from nocturne.config import DispatcherConfig
from nocturne.config import EmbeddingConfig
from nocturne.config import GenerationConfig
from nocturne.config import RetrievalConfig
from nocturne.config import StoreConfig
from nocturne.embedding import EmbeddingAdapter
from nocturne.embedding import EmbeddingGateway
from nocturne.embedding import build_embedding_adapter
from nocturne.engine import ActionCache
from nocturne.engine import ActionDispatcher
from nocturne.engine import ContextComposer
from nocturne.engine import InMemoryActionCache
from nocturne.engine import RedisActionCache
from nocturne.engine import RetrievalEngine
from nocturne.engine import TimeProvider
from nocturne.engine import UserProfileProvider
from nocturne.engine import build_generation_client
from nocturne.engine import default_actions
from nocturne.engine.actions import Action
from nocturne.engine.generation import GenerationClient
from nocturne.engine.providers import Provider
from nocturne.errors import DuplicateError
from nocturne.errors import StoreUnavailableError
from nocturne.knowledge import KnowledgeIngestor
from nocturne.memory import create_memory_record
from nocturne.memory import MemoryBackend
from nocturne.memory import MemoryStore
from nocturne.memory import MemoryTable
from nocturne.memory import RedisBackend
from nocturne.memory.schemas import KnowledgeItem
from nocturne.memory.schemas import MemoryRecord
from nocturne.models.schemas import CountResult
from nocturne.models.schemas import CreateMemoryInput
from nocturne.models.schemas import CreateMemoryResult
from nocturne.models.schemas import IngestKnowledgeInput
from nocturne.models.schemas import IngestKnowledgeResult
from nocturne.models.schemas import KnowledgeFragment
from nocturne.models.schemas import ListMemoriesInput
from nocturne.models.schemas import ListMemoriesResult
from nocturne.models.schemas import MemoryEntry
from nocturne.models.schemas import RemovalResult
from nocturne.models.schemas import SearchKnowledgeInput
from nocturne.models.schemas import SearchKnowledgeResult
from nocturne.models.schemas import SendMessageInput
from nocturne.models.schemas import SendMessageResult
from nocturne.observability import record_latency
from nocturne.runtime import AgentRuntime

mcp = FastMCP("Nocturne")

# ---------------------------------------------------------------------------
# Runtime instance (set via configure())
# ---------------------------------------------------------------------------

_backend: MemoryBackend | None = None
_stores: dict[MemoryTable, MemoryStore] = {}
_runtime: AgentRuntime | None = None
_retrieval_engine: RetrievalEngine | None = None
_ingestor: KnowledgeIngestor | None = None
_audit_logger: AuditLogger | None = None


async def configure(
    redis_url: str = "redis://localhost:6379",
    *,
    backend: MemoryBackend | None = None,
    agent_id: str = "nocturne",
    agent_name: str | None = None,
    persona_facts: Sequence[str] = (),
    actions: Sequence[Action] | None = None,
    providers: Sequence[Provider] | None = None,
    store_config: StoreConfig | None = None,
    embedding_config: EmbeddingConfig | None = None,
    embedding_adapter: EmbeddingAdapter | None = None,
    generation_config: GenerationConfig | None = None,
    generation_client: GenerationClient | None = None,
    retrieval_config: RetrievalConfig | None = None,
    composer_config: ComposerConfig | None = None,
    dispatcher_config: DispatcherConfig | None = None,
    chunking_config: ChunkingConfig | None = None,
    audit_config: AuditConfig | None = None,
    rng: random.Random | None = None,
) -> None:
    """Build the memory backend, engines and runtime.

    Pass *backend* to use a pre-built backend (e.g. ``InMemoryBackend``)
    instead of connecting to *redis_url*. Must be called before the MCP
    tools can function.
    """
    global _backend, _stores, _runtime, _retrieval_engine, _ingestor, _audit_logger
    if _backend is not None:
        try:
            await _backend.close()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass

    store_cfg = store_config or StoreConfig()
    embedding_cfg = embedding_config or EmbeddingConfig()
    dispatcher_cfg = dispatcher_config or DispatcherConfig()
    _audit_logger = AuditLogger(audit_config or AuditConfig())

    cache: ActionCache
    if backend is None:
        client = Redis.from_url(redis_url)
        backend = RedisBackend(client, config=store_cfg)
        cache = RedisActionCache(
            client,
            ttl_seconds=dispatcher_cfg.cache_ttl_seconds,
            key_prefix=store_cfg.key_prefix,
        )
    else:
        cache = InMemoryActionCache(ttl_seconds=dispatcher_cfg.cache_ttl_seconds)
    _backend = backend

    gateway = EmbeddingGateway(
        embedding_adapter or build_embedding_adapter(embedding_cfg),
        dimensions=embedding_cfg.dimensions,
    )
    _stores = {
        table: MemoryStore(backend, gateway, table=table, config=store_cfg)
        for table in MemoryTable
    }
    _retrieval_engine = RetrievalEngine(
        _stores[MemoryTable.knowledge],
        gateway,
        config=retrieval_config,
        rng=rng,
    )
    _ingestor = KnowledgeIngestor(_stores[MemoryTable.knowledge], chunking_config)

    registered = (
        list(actions)
        if actions is not None
        else default_actions(
            dispatcher_cfg.max_continuations,
            continue_across_user_turns=dispatcher_cfg.continue_across_user_turns,
        )
    )
    if providers is None:
        providers = [TimeProvider(), UserProfileProvider(_stores[MemoryTable.profile])]

    conversation = _stores[MemoryTable.conversation]
    composer = ContextComposer(
        conversation,
        _retrieval_engine,
        providers,
        persona_facts=persona_facts,
        actions=registered,
        config=composer_config,
    )
    dispatcher = ActionDispatcher(
        registered,
        cache=cache,
        store=conversation,
        config=dispatcher_cfg,
    )
    generator = generation_client or build_generation_client(
        generation_config or GenerationConfig()
    )
    _runtime = AgentRuntime(
        agent_id,
        conversation,
        composer,
        generator,
        dispatcher,
        agent_name=agent_name,
        audit_logger=_audit_logger,
        config=dispatcher_cfg,
    )


async def shutdown() -> None:
    """Close backend clients and release server resources."""
    global _backend, _stores, _runtime, _retrieval_engine, _ingestor, _audit_logger
    if _backend is not None:
        await _backend.close()
        _backend = None
    _stores = {}
    _runtime = None
    _retrieval_engine = None
    _ingestor = None
    _audit_logger = None


def _get_runtime() -> AgentRuntime:
    """Return the runtime or raise."""
    if _runtime is None:
        raise RuntimeError("Nocturne not configured. Call configure() first.")
    return _runtime


def _get_store(table: MemoryTable) -> MemoryStore:
    _get_runtime()
    return _stores[table]


def _get_retrieval() -> RetrievalEngine:
    if _retrieval_engine is None:
        raise RuntimeError("Nocturne not configured. Call configure() first.")
    return _retrieval_engine


def _get_ingestor() -> KnowledgeIngestor:
    if _ingestor is None:
        raise RuntimeError("Nocturne not configured. Call configure() first.")
    return _ingestor


def _parse_table(value: str) -> MemoryTable | None:
    try:
        return MemoryTable(value)
    except ValueError:
        return None


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    return str(err.get("msg", "Invalid input"))


def _invalid_table_message(value: str) -> str:
    tables = ", ".join(t.value for t in MemoryTable)
    return f"Unknown table '{value}'. Expected one of: {tables}."


def _entry(record: MemoryRecord) -> MemoryEntry:
    return MemoryEntry(
        id=record.id,
        user_id=record.user_id,
        room_id=record.room_id,
        text=record.text,
        action=record.content.action,
        created_at=record.created_at,
    )


async def _audit(event_type: AuditEventType, room_id: str | None, **payload: object) -> None:
    if _audit_logger is None:
        return
    await _audit_logger.record(event_type, room_id=room_id, **payload)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def send_message(
    text: str,
    user_id: str,
    room_id: str,
    attachments: list[dict] | None = None,
) -> SendMessageResult:
    """Send a user message to the agent and receive its responses.

    Args:
        text: Message text.
        user_id: Identifier of the speaking user.
        room_id: Conversation the message belongs to.
        attachments: Optional attachment descriptors.
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        try:
            validated = SendMessageInput.model_validate(
                {
                    "text": text,
                    "user_id": user_id,
                    "room_id": room_id,
                    "attachments": attachments or [],
                }
            )
        except ValidationError as exc:
            return SendMessageResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        try:
            outcome = await runtime.handle_message(
                user_id=validated.user_id,
                room_id=validated.room_id,
                text=validated.text,
                attachments=validated.attachments,
            )
        except StoreUnavailableError as exc:
            return SendMessageResult(
                status="error",
                error_code="store_unavailable",
                message=str(exc),
            )
        ok = True
        return SendMessageResult(
            message_id=outcome.message_id,
            responses=outcome.responses,
            actions=outcome.actions,
        )
    finally:
        record_latency(
            operation="mcp.send_message",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def create_memory(
    text: str,
    room_id: str,
    user_id: str | None = None,
    table: str = "lore",
    unique: bool = False,
) -> CreateMemoryResult:
    """Store a memory directly, outside the conversation flow.

    Args:
        text: Text of the memory.
        room_id: Room the memory belongs to.
        user_id: Author of the memory; defaults to the agent.
        table: One of conversation, lore, knowledge, profile.
        unique: Reject the memory when the room already holds it.
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        try:
            validated = CreateMemoryInput.model_validate(
                {
                    "text": text,
                    "room_id": room_id,
                    "user_id": user_id,
                    "table": table,
                    "unique": unique,
                }
            )
        except ValidationError as exc:
            return CreateMemoryResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        record = create_memory_record(
            validated.text,
            agent_id=runtime.agent_id,
            user_id=validated.user_id or runtime.agent_id,
            room_id=validated.room_id,
            table=validated.table,
        )
        try:
            memory_id = await _get_store(validated.table).create(
                record, unique=validated.unique
            )
        except DuplicateError as exc:
            ok = True
            return CreateMemoryResult(
                memory_id=exc.existing_id or "",
                status="duplicate",
                error_code="duplicate",
                message=str(exc),
            )
        ok = True
        return CreateMemoryResult(memory_id=memory_id)
    finally:
        record_latency(
            operation="mcp.create_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def list_memories(
    room_id: str,
    table: str = "conversation",
    count: int = 10,
    unique: bool = False,
) -> ListMemoriesResult:
    """List the most recent memories of a room, newest first.

    Args:
        room_id: Room to read.
        table: One of conversation, lore, knowledge, profile.
        count: Maximum number of records.
        unique: Collapse repeated texts.
    """
    start = perf_counter()
    ok = False
    try:
        _get_runtime()
        try:
            validated = ListMemoriesInput.model_validate(
                {"room_id": room_id, "table": table, "count": count, "unique": unique}
            )
        except ValidationError as exc:
            return ListMemoriesResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        records = await _get_store(validated.table).list(
            validated.room_id, validated.count, unique=validated.unique
        )
        ok = True
        return ListMemoriesResult(memories=[_entry(r) for r in records])
    finally:
        record_latency(
            operation="mcp.list_memories",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def search_knowledge(
    query: str,
    count: int = 5,
    threshold: float | None = None,
) -> SearchKnowledgeResult:
    """Search the knowledge table visible to the agent.

    Args:
        query: Natural language query.
        count: Maximum number of fragments.
        threshold: Similarity floor; defaults to the configured threshold.
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        try:
            validated = SearchKnowledgeInput.model_validate(
                {"query": query, "count": count, "threshold": threshold}
            )
        except ValidationError as exc:
            return SearchKnowledgeResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        fragments = await _get_retrieval().retrieve(
            validated.query,
            agent_id=runtime.agent_id,
            count=validated.count,
            threshold=validated.threshold,
        )
        ok = True
        return SearchKnowledgeResult(
            fragments=[
                KnowledgeFragment(
                    id=fragment.id,
                    text=fragment.text,
                    similarity=fragment.similarity,
                    score=fragment.score,
                    document_id=(
                        fragment.record.document_id
                        if isinstance(fragment.record, KnowledgeItem)
                        else None
                    ),
                )
                for fragment in fragments
            ]
        )
    finally:
        record_latency(
            operation="mcp.search_knowledge",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def ingest_knowledge(
    text: str,
    document_id: str | None = None,
    shared: bool = True,
    source: str | None = None,
) -> IngestKnowledgeResult:
    """Chunk a document into the knowledge table.

    Args:
        text: Document text.
        document_id: Stable document identifier.
        shared: Make the knowledge visible to every agent.
        source: Where the document came from.
    """
    start = perf_counter()
    ok = False
    try:
        runtime = _get_runtime()
        try:
            validated = IngestKnowledgeInput.model_validate(
                {
                    "text": text,
                    "document_id": document_id,
                    "shared": shared,
                    "source": source,
                }
            )
        except ValidationError as exc:
            return IngestKnowledgeResult(
                status="rejected",
                error_code="validation_error",
                message=_validation_message(exc),
            )

        result = await _get_ingestor().ingest(
            validated.text,
            agent_id=runtime.agent_id,
            document_id=validated.document_id,
            shared=validated.shared,
            source=validated.source,
        )
        await _audit(
            AuditEventType.KNOWLEDGE_INGESTED,
            None,
            document_id=result.document_id,
            created=len(result.created),
            skipped=result.skipped,
        )
        ok = True
        return IngestKnowledgeResult(
            document_id=result.document_id,
            created=result.created,
            skipped=result.skipped,
        )
    finally:
        record_latency(
            operation="mcp.ingest_knowledge",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def remove_memory(memory_id: str, table: str = "conversation") -> RemovalResult:
    """Hard-delete one memory.

    Args:
        memory_id: ID of the record.
        table: Table holding the record.
    """
    start = perf_counter()
    ok = False
    try:
        _get_runtime()
        parsed = _parse_table(table)
        if parsed is None:
            return RemovalResult(
                status="rejected",
                error_code="invalid_table",
                message=_invalid_table_message(table),
            )

        store = _get_store(parsed)
        record = await store.get(memory_id)
        removed = await store.remove(memory_id)
        ok = True
        if not removed:
            return RemovalResult(status="not_found")
        await _audit(
            AuditEventType.MEMORY_REMOVED,
            record.room_id if record else None,
            memory_id=memory_id,
            table=parsed.value,
        )
        return RemovalResult(removed=1)
    finally:
        record_latency(
            operation="mcp.remove_memory",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def purge_room(room_id: str, table: str | None = None) -> RemovalResult:
    """Delete every memory of a room, in one table or in all of them.

    Args:
        room_id: Room to purge.
        table: Restrict the purge to one table.
    """
    start = perf_counter()
    ok = False
    try:
        _get_runtime()
        if table is None:
            tables = list(MemoryTable)
        else:
            parsed = _parse_table(table)
            if parsed is None:
                return RemovalResult(
                    status="rejected",
                    error_code="invalid_table",
                    message=_invalid_table_message(table),
                )
            tables = [parsed]

        removed = 0
        for target in tables:
            removed += await _get_store(target).purge_room(room_id)
        if _retrieval_engine is not None:
            _retrieval_engine.reset_session(room_id)
        await _audit(
            AuditEventType.ROOM_PURGED,
            room_id,
            tables=[t.value for t in tables],
            removed=removed,
        )
        ok = True
        return RemovalResult(removed=removed)
    finally:
        record_latency(
            operation="mcp.purge_room",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def count_memories(
    room_id: str | None = None, table: str = "conversation"
) -> CountResult:
    """Count memories in a room, or in a whole table.

    Args:
        room_id: Room to count; omit for the whole table.
        table: Table to count.
    """
    parsed = _parse_table(table)
    if parsed is None:
        raise ValueError(_invalid_table_message(table))
    count = await _get_store(parsed).count(room_id)
    return CountResult(count=count, table=parsed, room_id=room_id)

