"""Action dispatcher — runs at most one action per generated response.

States::

    NO_ACTION                                   (no tag; terminal)
    DETECTED -> VALIDATING -> EXECUTING -> COMPLETED
                     \\-> REJECTED              (unmatched tag or failed validation)

Rejected drafts pass through unchanged. Handler failures are contained:
the handler's output is replaced by an apology and the dispatch still
completes.
"""

from __future__ import annotations

import enum
import inspect
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter
from typing import Any

from nocturne.config import DispatcherConfig
from nocturne.engine.actions import Action
from nocturne.engine.actions import ActionCache
from nocturne.engine.actions import ActionContext
from nocturne.engine.actions import ActionMatcher
from nocturne.engine.actions import ActionResponse
from nocturne.engine.actions import FuzzyActionMatcher
from nocturne.engine.actions import InMemoryActionCache
from nocturne.engine.generation import DraftResponse
from nocturne.errors import ActionExecutionError
from nocturne.errors import ActionValidationRejected
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.store import MemoryStore
from nocturne.observability import record_latency

logger = logging.getLogger(__name__)


class DispatchState(str, enum.Enum):
    """States of a single dispatch."""

    NO_ACTION = "no_action"
    DETECTED = "detected"
    VALIDATING = "validating"
    EXECUTING = "executing"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass
class DispatchResult:
    """Outcome of dispatching one draft."""

    state: DispatchState
    responses: list[ActionResponse]
    action: str | None = None
    tag: str | None = None
    transitions: list[DispatchState] = field(default_factory=list)
    followups: list[MemoryRecord] = field(default_factory=list)
    rejection_reason: str | None = None
    error: str | None = None

    @property
    def texts(self) -> list[str]:
        return [response.text for response in self.responses]


class ActionDispatcher:
    """Matches a draft's action tag, validates it and executes its handler.

    The action list is fixed at construction; its order is the tie-break
    for ambiguous matches.
    """

    def __init__(
        self,
        actions: Sequence[Action] = (),
        *,
        matcher: ActionMatcher | None = None,
        cache: ActionCache | None = None,
        store: MemoryStore | None = None,
        config: DispatcherConfig | None = None,
    ) -> None:
        self._actions = tuple(actions)
        self._config = config or DispatcherConfig()
        self._matcher = matcher or FuzzyActionMatcher()
        self._cache = cache or InMemoryActionCache(
            ttl_seconds=self._config.cache_ttl_seconds
        )
        self._store = store

    @property
    def actions(self) -> tuple[Action, ...]:
        return self._actions

    async def dispatch(
        self,
        draft: DraftResponse,
        message: MemoryRecord,
        *,
        runtime: Any = None,
        state: dict[str, Any] | None = None,
    ) -> DispatchResult:
        """Run the state machine over *draft*, produced in reply to *message*."""
        start = perf_counter()
        try:
            return await self._dispatch(draft, message, runtime, state or {})
        finally:
            record_latency(
                operation="action_dispatcher.dispatch",
                duration_ms=(perf_counter() - start) * 1000,
            )

    async def _dispatch(
        self,
        draft: DraftResponse,
        message: MemoryRecord,
        runtime: Any,
        state: dict[str, Any],
    ) -> DispatchResult:
        passthrough = [ActionResponse(text=draft.text)] if draft.text else []
        tag = draft.action.strip() if draft.action else ""
        if not tag:
            return DispatchResult(
                state=DispatchState.NO_ACTION,
                responses=passthrough,
                transitions=[DispatchState.NO_ACTION],
            )

        transitions = [DispatchState.DETECTED, DispatchState.VALIDATING]
        action = self._matcher.match(tag, self._actions)
        if action is None:
            logger.info("no registered action matches tag=%s", tag)
            transitions.append(DispatchState.REJECTED)
            return DispatchResult(
                state=DispatchState.REJECTED,
                responses=passthrough,
                tag=tag,
                transitions=transitions,
                rejection_reason="unmatched",
            )

        ctx = ActionContext(
            message=message,
            draft_text=draft.text,
            state=state,
            runtime=runtime,
            store=self._store,
            cache=self._cache,
            action_name=action.name,
        )
        if not await self._validate(action, ctx):
            transitions.append(DispatchState.REJECTED)
            return DispatchResult(
                state=DispatchState.REJECTED,
                responses=passthrough,
                action=action.name,
                tag=tag,
                transitions=transitions,
                rejection_reason="validation_failed",
            )

        transitions.append(DispatchState.EXECUTING)
        initial = [] if action.suppress_initial_message else passthrough
        error: str | None = None
        try:
            produced = await _collect(action.handler(ctx))
        except ActionExecutionError as exc:
            logger.warning("action %s failed: %s", action.name, exc)
            error = f"{type(exc).__name__}: {exc}"
            produced = [ActionResponse(text=self._config.apology_text)]
            ctx.followups.clear()
        except Exception as exc:
            logger.exception("action %s failed while executing", action.name)
            error = f"{type(exc).__name__}: {exc}"
            produced = [ActionResponse(text=self._config.apology_text)]
            ctx.followups.clear()

        responses = _annotate(initial + produced, action.name)
        transitions.append(DispatchState.COMPLETED)
        logger.info(
            "action %s completed room=%s responses=%d followups=%d",
            action.name,
            message.room_id,
            len(responses),
            len(ctx.followups),
        )
        return DispatchResult(
            state=DispatchState.COMPLETED,
            responses=responses,
            action=action.name,
            tag=tag,
            transitions=transitions,
            followups=list(ctx.followups),
            error=error,
        )

    async def _validate(self, action: Action, ctx: ActionContext) -> bool:
        try:
            return bool(await action.validate(ctx))
        except ActionValidationRejected as exc:
            logger.info("action %s refused: %s", action.name, exc)
            return False
        except Exception:
            logger.exception("validation for action %s raised; rejecting", action.name)
            return False


async def _collect(result: Any) -> list[ActionResponse]:
    """Drain a handler result: an async iterator, an awaitable, or a plain value."""
    if inspect.isawaitable(result):
        result = await result
    if result is None:
        return []
    if isinstance(result, ActionResponse):
        return [result]
    if hasattr(result, "__aiter__"):
        return [response async for response in result]
    return list(result)


def _annotate(responses: list[ActionResponse], action_name: str) -> list[ActionResponse]:
    """Tag the first response with the completed action unless it names its own."""
    if not responses or responses[0].action:
        return responses
    first = responses[0]
    return [
        ActionResponse(text=first.text, action=action_name, metadata=first.metadata),
        *responses[1:],
    ]
