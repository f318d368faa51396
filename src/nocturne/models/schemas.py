"""Pydantic models for the MCP interface.

Input models validate tool arguments; output models shape responses.
FastMCP serializes Pydantic models automatically.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import Field

from nocturne.memory.schemas import MemoryTable

# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class SendMessageInput(BaseModel):
    """Input for send_message tool."""

    text: str = Field(
        min_length=1,
        description="Message text from the user.",
    )
    user_id: str = Field(
        min_length=1,
        description="Identifier of the speaking user.",
    )
    room_id: str = Field(
        min_length=1,
        description="Conversation the message belongs to.",
    )
    attachments: list[dict[str, Any]] = Field(
        default_factory=list,
        description="Attachment descriptors (url, title, mime type).",
    )


class CreateMemoryInput(BaseModel):
    """Input for create_memory tool."""

    text: str = Field(
        min_length=1,
        description="Text of the memory.",
    )
    room_id: str = Field(
        min_length=1,
        description="Room the memory belongs to.",
    )
    user_id: str | None = Field(
        default=None,
        description="Author of the memory; defaults to the agent.",
    )
    table: MemoryTable = Field(
        default=MemoryTable.lore,
        description="Logical table to write to.",
    )
    unique: bool = Field(
        default=False,
        description="Reject the memory if the room already holds it.",
    )


class ListMemoriesInput(BaseModel):
    """Input for list_memories tool."""

    room_id: str = Field(
        min_length=1,
        description="Room to read.",
    )
    table: MemoryTable = Field(
        default=MemoryTable.conversation,
        description="Logical table to read from.",
    )
    count: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Maximum number of records to return.",
    )
    unique: bool = Field(
        default=False,
        description="Collapse repeated texts onto their newest occurrence.",
    )


class SearchKnowledgeInput(BaseModel):
    """Input for search_knowledge tool."""

    query: str = Field(
        min_length=1,
        description="Natural language search query.",
    )
    count: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum number of fragments to return.",
    )
    threshold: float | None = Field(
        default=None,
        ge=-1.0,
        le=1.0,
        description="Similarity floor; defaults to the configured threshold.",
    )


class IngestKnowledgeInput(BaseModel):
    """Input for ingest_knowledge tool."""

    text: str = Field(
        min_length=1,
        description="Document text to chunk and store.",
    )
    document_id: str | None = Field(
        default=None,
        description="Stable identifier for the document.",
    )
    shared: bool = Field(
        default=True,
        description="Make the knowledge visible to every agent.",
    )
    source: str | None = Field(
        default=None,
        description="Where the document came from.",
    )


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class MemoryEntry(BaseModel):
    """A single record in a tool response."""

    id: str = Field(
        description="Unique identifier of the record.",
    )
    user_id: str = Field(
        description="Author of the record.",
    )
    room_id: str = Field(
        description="Room the record belongs to.",
    )
    text: str = Field(
        description="Textual content.",
    )
    action: str | None = Field(
        default=None,
        description="Action completed with this record, if any.",
    )
    created_at: float = Field(
        description="Unix epoch of creation.",
    )


class SendMessageResult(BaseModel):
    """Response from send_message."""

    message_id: str = Field(
        default="",
        description="ID assigned to the stored inbound message.",
    )
    responses: list[str] = Field(
        default_factory=list,
        description="Agent responses in emission order.",
    )
    actions: list[str] = Field(
        default_factory=list,
        description="Actions that completed while handling the message.",
    )
    status: str = Field(
        default="ok",
        description="Outcome status (ok, rejected, error).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure code.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable failure description.",
    )


class CreateMemoryResult(BaseModel):
    """Response from create_memory."""

    memory_id: str = Field(
        default="",
        description="ID of the created record, or of the existing duplicate.",
    )
    status: str = Field(
        default="accepted",
        description="Outcome status (accepted, duplicate, rejected).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure code.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable failure description.",
    )


class ListMemoriesResult(BaseModel):
    """Response from list_memories."""

    memories: list[MemoryEntry] = Field(
        default_factory=list,
        description="Records, newest first.",
    )
    status: str = Field(
        default="ok",
        description="Outcome status (ok, rejected).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure code.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable failure description.",
    )


class KnowledgeFragment(BaseModel):
    """A knowledge chunk with its retrieval scores."""

    id: str = Field(
        description="Unique identifier of the chunk.",
    )
    text: str = Field(
        description="Chunk text.",
    )
    similarity: float = Field(
        description="Cosine similarity to the query.",
    )
    score: float = Field(
        description="Reranked relevance score.",
    )
    document_id: str | None = Field(
        default=None,
        description="Source document identifier.",
    )


class SearchKnowledgeResult(BaseModel):
    """Response from search_knowledge."""

    fragments: list[KnowledgeFragment] = Field(
        default_factory=list,
        description="Fragments ordered by relevance.",
    )
    status: str = Field(
        default="ok",
        description="Outcome status (ok, rejected).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure code.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable failure description.",
    )


class IngestKnowledgeResult(BaseModel):
    """Response from ingest_knowledge."""

    document_id: str = Field(
        default="",
        description="Identifier of the ingested document.",
    )
    created: list[str] = Field(
        default_factory=list,
        description="IDs of newly stored chunks.",
    )
    skipped: int = Field(
        default=0,
        description="Chunks skipped as already known.",
    )
    status: str = Field(
        default="accepted",
        description="Outcome status (accepted, rejected).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure code.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable failure description.",
    )


class RemovalResult(BaseModel):
    """Response from remove_memory and purge_room."""

    removed: int = Field(
        default=0,
        description="Number of records deleted.",
    )
    status: str = Field(
        default="ok",
        description="Outcome status (ok, not_found, rejected).",
    )
    error_code: str | None = Field(
        default=None,
        description="Machine-readable failure code.",
    )
    message: str | None = Field(
        default=None,
        description="Human-readable failure description.",
    )


class CountResult(BaseModel):
    """Response from count_memories."""

    count: int = Field(
        default=0,
        description="Number of matching records.",
    )
    table: MemoryTable = Field(
        default=MemoryTable.conversation,
        description="Table that was counted.",
    )
    room_id: str | None = Field(
        default=None,
        description="Room that was counted, or None for the whole table.",
    )
