"""Agent runtime — the message pipeline from inbound text to persisted replies.

inbound message -> memory store -> context composer -> generation client
-> action dispatcher -> responses persisted to the memory store.

Only ``StoreUnavailableError`` escapes ``handle_message``; generation,
provider and action failures degrade inside the pipeline.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from dataclasses import field
from typing import Any

from nocturne.audit import AuditEventType
from nocturne.audit import AuditLogger
from nocturne.config import DispatcherConfig
from nocturne.engine.actions import ActionResponse
from nocturne.engine.composer import ContextComposer
from nocturne.engine.dispatcher import ActionDispatcher
from nocturne.engine.dispatcher import DispatchResult
from nocturne.engine.dispatcher import DispatchState
from nocturne.engine.generation import DraftResponse
from nocturne.engine.generation import GenerationClient
from nocturne.engine.generation import build_generation_prompt
from nocturne.memory import create_memory_record
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.store import MemoryStore
from nocturne.observability import timed

logger = logging.getLogger(__name__)


@dataclass
class MessageOutcome:
    """What one inbound message produced."""

    message_id: str
    responses: list[str] = field(default_factory=list)
    dispatches: list[DispatchResult] = field(default_factory=list)

    @property
    def actions(self) -> list[str]:
        return [
            d.action
            for d in self.dispatches
            if d.state is DispatchState.COMPLETED and d.action
        ]


class AgentRuntime:
    """Wires the store, composer, generator and dispatcher for one agent."""

    def __init__(
        self,
        agent_id: str,
        store: MemoryStore,
        composer: ContextComposer,
        generator: GenerationClient,
        dispatcher: ActionDispatcher,
        *,
        agent_name: str | None = None,
        audit_logger: AuditLogger | None = None,
        config: DispatcherConfig | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.agent_name = agent_name or agent_id
        self._store = store
        self._composer = composer
        self._generator = generator
        self._dispatcher = dispatcher
        self._audit = audit_logger
        self._config = config or DispatcherConfig()

    async def handle_message(
        self,
        *,
        user_id: str,
        room_id: str,
        text: str,
        attachments: list[dict[str, Any]] | None = None,
    ) -> MessageOutcome:
        """Persist *text*, generate a reply, dispatch its action and persist the result."""
        with timed("runtime.handle_message"):
            message = create_memory_record(
                text,
                agent_id=self.agent_id,
                user_id=user_id,
                room_id=room_id,
                attachments=attachments,
            )
            await self._store.create(message)
            await self._audit_event(
                AuditEventType.MESSAGE_RECEIVED,
                room_id,
                message_id=message.id,
                user_id=user_id,
            )

            outcome = MessageOutcome(message_id=message.id)
            state: dict[str, Any] = {"room_id": room_id, "user_id": user_id}
            draft = await self._generate(message, state)
            queue: deque[DraftResponse] = deque([draft])
            depth = 0
            while queue:
                if depth > self._config.max_chain_depth:
                    logger.warning(
                        "action chain cut at depth=%d room=%s pending=%d",
                        depth,
                        room_id,
                        len(queue),
                    )
                    break
                result = await self._dispatcher.dispatch(
                    queue.popleft(), message, runtime=self, state=state
                )
                outcome.dispatches.append(result)
                outcome.responses.extend(await self._persist(result.responses, room_id))
                await self._audit_dispatch(result, room_id)
                queue.extend(
                    DraftResponse(text=record.text, action=record.content.action)
                    for record in result.followups
                )
                depth += 1
            return outcome

    async def continue_conversation(self, message: MemoryRecord) -> DraftResponse:
        """Generate the next agent turn without new user input."""
        return await self._generate(message, {"room_id": message.room_id, "continuation": True})

    async def _generate(self, message: MemoryRecord, state: dict[str, Any]) -> DraftResponse:
        bundle = await self._composer.compose(message, runtime=self, state=state)
        state["context"] = bundle
        prompt = build_generation_prompt(bundle, message, agent_name=self.agent_name)
        try:
            return await self._generator.generate(prompt)
        except Exception:
            logger.exception("generation failed room=%s", message.room_id)
            return DraftResponse(text=self._config.apology_text)

    async def _persist(self, responses: list[ActionResponse], room_id: str) -> list[str]:
        texts: list[str] = []
        for response in responses:
            if not response.text:
                continue
            record = create_memory_record(
                response.text,
                agent_id=self.agent_id,
                user_id=self.agent_id,
                room_id=room_id,
                action=response.action,
                metadata=response.metadata,
            )
            await self._store.create(record)
            await self._audit_event(
                AuditEventType.RESPONSE_SENT,
                room_id,
                message_id=record.id,
                action=response.action,
            )
            texts.append(response.text)
        return texts

    async def _audit_dispatch(self, result: DispatchResult, room_id: str) -> None:
        if result.state is DispatchState.NO_ACTION:
            return
        event_type = (
            AuditEventType.ACTION_FAILED if result.error else AuditEventType.ACTION_DISPATCHED
        )
        await self._audit_event(
            event_type,
            room_id,
            tag=result.tag,
            action=result.action,
            state=result.state.value,
            rejection_reason=result.rejection_reason,
            error=result.error,
        )

    async def _audit_event(
        self, event_type: AuditEventType, room_id: str, **payload: object
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.record(event_type, room_id=room_id, **payload)
        except OSError:
            logger.exception("audit write failed event=%s", event_type.value)
