"""Models domain — MCP input and result models."""

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

__all__ = [
    "CountResult",
    "CreateMemoryInput",
    "CreateMemoryResult",
    "IngestKnowledgeInput",
    "IngestKnowledgeResult",
    "KnowledgeFragment",
    "ListMemoriesInput",
    "ListMemoriesResult",
    "MemoryEntry",
    "RemovalResult",
    "SearchKnowledgeInput",
    "SearchKnowledgeResult",
    "SendMessageInput",
    "SendMessageResult",
]
