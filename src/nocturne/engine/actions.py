"""Action definitions, name matching strategies and the per-action state cache."""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import AsyncIterator
from collections.abc import Awaitable
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Protocol

from redis.asyncio import Redis  # type: ignore[import-untyped]

from nocturne.memory.schemas import Content
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.schemas import MemoryTable
from nocturne.memory.store import MemoryStore

_SEPARATOR_RE = re.compile(r"[^a-z0-9]+")


def normalize_action_name(name: str | None) -> str:
    """Case- and separator-insensitive key: ``"Send-Message"`` -> ``"sendmessage"``."""
    if not name:
        return ""
    return _SEPARATOR_RE.sub("", name.lower())


# ---------------------------------------------------------------------------
# Action model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionResponse:
    """One response delta emitted by a handler."""

    text: str
    action: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionContext:
    """Everything a validator or handler may look at for one dispatch."""

    message: MemoryRecord
    draft_text: str
    state: dict[str, Any]
    runtime: Any
    store: MemoryStore | None
    cache: ActionCache
    action_name: str
    followups: list[MemoryRecord] = field(default_factory=list)

    def cache_key(self) -> tuple[str, str, str]:
        return (self.message.room_id, self.message.user_id, self.action_name)

    async def load_state(self) -> dict[str, Any] | None:
        """Read this action's multi-turn state for the current room and user."""
        return await self.cache.get(*self.cache_key())

    async def save_state(self, value: dict[str, Any]) -> None:
        await self.cache.set(*self.cache_key(), value)

    async def clear_state(self) -> None:
        await self.cache.delete(*self.cache_key())

    def enqueue_followup(self, text: str, *, action: str) -> MemoryRecord:
        """Queue an agent message that asks the dispatcher to run *action* next.

        The runtime dispatches it after the current turn and persists what
        that dispatch emits.
        """
        record = MemoryRecord(
            agent_id=self.message.agent_id,
            user_id=self.message.agent_id,
            room_id=self.message.room_id,
            table=MemoryTable.conversation,
            content=Content(text=text, action=action),
        )
        self.followups.append(record)
        return record


Validator = Callable[[ActionContext], Awaitable[bool]]
# Handlers are async generators of deltas, or coroutines returning a delta,
# a list of deltas, or None.
Handler = Callable[[ActionContext], AsyncIterator[ActionResponse] | Awaitable[Any]]


async def _always_valid(ctx: ActionContext) -> bool:
    del ctx
    return True


@dataclass(frozen=True)
class Action:
    """A named, validated, handler-backed operation the agent may trigger."""

    name: str
    handler: Handler
    description: str = ""
    validate: Validator = _always_valid
    similes: tuple[str, ...] = ()
    # Example dialogues shown to the model; never checked at runtime.
    examples: tuple[tuple[str, str], ...] = ()
    suppress_initial_message: bool = False

    def triggers(self) -> tuple[str, ...]:
        """Normalized name followed by normalized similes."""
        names = (self.name, *self.similes)
        return tuple(key for key in (normalize_action_name(n) for n in names) if key)


# ---------------------------------------------------------------------------
# Matching strategies
# ---------------------------------------------------------------------------


class ActionMatcher(Protocol):
    """Resolves a generated action tag to a registered action."""

    def match(self, tag: str, actions: Sequence[Action]) -> Action | None: ...


class ExactActionMatcher:
    """Matches only when the normalized tag equals a name or simile."""

    def match(self, tag: str, actions: Sequence[Action]) -> Action | None:
        key = normalize_action_name(tag)
        if not key:
            return None
        return next((a for a in actions if key in a.triggers()), None)


class FuzzyActionMatcher:
    """Exact matches win; otherwise the first containment match in either direction.

    Containment lets paraphrased tags such as ``"CONTINUE_TALKING"`` resolve
    to ``CONTINUE``, at the cost of possible ambiguity, which registration
    order settles.
    """

    def __init__(self) -> None:
        self._exact = ExactActionMatcher()

    def match(self, tag: str, actions: Sequence[Action]) -> Action | None:
        exact = self._exact.match(tag, actions)
        if exact is not None:
            return exact
        key = normalize_action_name(tag)
        if not key:
            return None
        for action in actions:
            for trigger in action.triggers():
                if trigger in key or key in trigger:
                    return action
        return None


# ---------------------------------------------------------------------------
# Scoped state cache
# ---------------------------------------------------------------------------


class ActionCache(Protocol):
    """Multi-turn action state keyed by ``(room, user, action)``."""

    async def get(self, room_id: str, user_id: str, action: str) -> dict[str, Any] | None: ...

    async def set(
        self, room_id: str, user_id: str, action: str, value: dict[str, Any]
    ) -> None: ...

    async def delete(self, room_id: str, user_id: str, action: str) -> None: ...


class InMemoryActionCache:
    """Process-local cache with per-entry TTL."""

    def __init__(
        self, *, ttl_seconds: float = 900, clock: Callable[[], float] | None = None
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[tuple[str, str, str], tuple[float, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(room_id: str, user_id: str, action: str) -> tuple[str, str, str]:
        return (room_id, user_id, normalize_action_name(action))

    async def get(self, room_id: str, user_id: str, action: str) -> dict[str, Any] | None:
        key = self._key(room_id, user_id, action)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return dict(value)

    async def set(
        self, room_id: str, user_id: str, action: str, value: dict[str, Any]
    ) -> None:
        async with self._lock:
            self._entries[self._key(room_id, user_id, action)] = (
                self._clock() + self._ttl,
                dict(value),
            )

    async def delete(self, room_id: str, user_id: str, action: str) -> None:
        async with self._lock:
            self._entries.pop(self._key(room_id, user_id, action), None)


class RedisActionCache:
    """Redis-backed cache; entries live at ``{prefix}:action:{room}:{user}:{action}``."""

    def __init__(
        self, redis: Redis, *, ttl_seconds: int = 900, key_prefix: str = "nocturne"
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    def _key(self, room_id: str, user_id: str, action: str) -> str:
        return f"{self._prefix}:action:{room_id}:{user_id}:{normalize_action_name(action)}"

    async def get(self, room_id: str, user_id: str, action: str) -> dict[str, Any] | None:
        raw = await self._redis.get(self._key(room_id, user_id, action))
        return None if raw is None else json.loads(raw)

    async def set(
        self, room_id: str, user_id: str, action: str, value: dict[str, Any]
    ) -> None:
        await self._redis.set(
            self._key(room_id, user_id, action), json.dumps(value), ex=self._ttl
        )

    async def delete(self, room_id: str, user_id: str, action: str) -> None:
        await self._redis.delete(self._key(room_id, user_id, action))
