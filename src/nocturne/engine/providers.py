"""Context providers — independent contributors of situational context."""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from typing import Any
from typing import Protocol
from typing import runtime_checkable

from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.store import MemoryStore


class NoContribution(enum.Enum):
    """Sentinel type for providers with nothing to add."""

    token = "no_contribution"

    def __bool__(self) -> bool:
        return False


NO_CONTRIBUTION = NoContribution.token


@runtime_checkable
class Provider(Protocol):
    """A named, prioritized context contributor.

    Higher ``priority`` survives budget truncation longer.
    """

    name: str
    priority: int

    async def get(
        self, runtime: Any, message: MemoryRecord, state: dict[str, Any]
    ) -> str | NoContribution: ...


@dataclass(frozen=True)
class ProviderOutput:
    """A non-empty contribution produced during composition."""

    name: str
    priority: int
    text: str


@dataclass
class TimeProvider:
    """Tells the agent the current date and time in UTC."""

    name: str = "time"
    priority: int = 10
    clock: Callable[[], datetime] | None = None

    async def get(
        self, runtime: Any, message: MemoryRecord, state: dict[str, Any]
    ) -> str | NoContribution:
        del runtime, message, state
        now = self.clock() if self.clock else datetime.now(tz=UTC)
        return f"The current date and time is {now.strftime('%Y-%m-%d %H:%M')} UTC."


@dataclass
class StaticTextProvider:
    """Contributes fixed text, e.g. setting or mood notes."""

    name: str
    text: str
    priority: int = 0

    async def get(
        self, runtime: Any, message: MemoryRecord, state: dict[str, Any]
    ) -> str | NoContribution:
        del runtime, message, state
        return self.text if self.text.strip() else NO_CONTRIBUTION


@dataclass
class UserProfileProvider:
    """Surfaces what the profile table remembers about the speaker.

    Profile records are kept in a room named after the user.
    """

    store: MemoryStore
    name: str = "user_profile"
    priority: int = 5
    limit: int = 5

    async def get(
        self, runtime: Any, message: MemoryRecord, state: dict[str, Any]
    ) -> str | NoContribution:
        del runtime, state
        facts = await self.store.list(message.user_id, self.limit, unique=True)
        if not facts:
            return NO_CONTRIBUTION
        lines = "\n".join(f"- {fact.text}" for fact in facts)
        return f"Known about {message.user_id}:\n{lines}"
