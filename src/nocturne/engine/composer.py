"""Context composer — assembles the bounded bundle handed to generation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter
from typing import Any

from nocturne.config import ComposerConfig
from nocturne.engine.actions import Action
from nocturne.engine.providers import Provider
from nocturne.engine.providers import ProviderOutput
from nocturne.engine.retrieval import RetrievalEngine
from nocturne.engine.retrieval import RetrievedFragment
from nocturne.errors import ProviderError
from nocturne.memory.schemas import MemoryRecord
from nocturne.memory.store import MemoryStore
from nocturne.observability import record_latency

logger = logging.getLogger(__name__)


@dataclass
class ContextBundle:
    """Everything generation sees for one turn, within ``budget_chars``."""

    budget_chars: int
    provider_header: str = "# Additional Information"
    conversation: list[MemoryRecord] = field(default_factory=list)
    persona_facts: list[str] = field(default_factory=list)
    knowledge: list[RetrievedFragment] = field(default_factory=list)
    actions: list[tuple[str, str]] = field(default_factory=list)
    provider_outputs: list[ProviderOutput] = field(default_factory=list)
    dropped: dict[str, int] = field(default_factory=dict)

    def render(self) -> str:
        sections: list[str] = []
        if self.persona_facts:
            sections.append("# About You\n" + "\n".join(self.persona_facts))
        if self.knowledge:
            lines = "\n".join(f"- {fragment.text}" for fragment in self.knowledge)
            sections.append("# Knowledge\n" + lines)
        if self.actions:
            lines = "\n".join(f"- {name}: {desc}" for name, desc in self.actions)
            sections.append("# Available Actions\n" + lines)
        if self.provider_outputs:
            joined = "\n\n".join(output.text for output in self.provider_outputs)
            sections.append(f"{self.provider_header}\n{joined}")
        if self.conversation:
            lines = "\n".join(_format_message(r) for r in self.conversation)
            sections.append("# Recent Conversation\n" + lines)
        return "\n\n".join(sections)

    def size(self) -> int:
        return len(self.render())

    def fits(self) -> bool:
        return self.size() <= self.budget_chars

    def mark_dropped(self, section: str) -> None:
        self.dropped[section] = self.dropped.get(section, 0) + 1


def _format_message(record: MemoryRecord) -> str:
    return f"{record.user_id}: {record.text}"


class ContextComposer:
    """Runs conversation fetch, retrieval and providers concurrently."""

    def __init__(
        self,
        store: MemoryStore,
        retrieval: RetrievalEngine,
        providers: Sequence[Provider] = (),
        *,
        persona_facts: Sequence[str] = (),
        actions: Sequence[Action] = (),
        config: ComposerConfig | None = None,
    ) -> None:
        self._store = store
        self._retrieval = retrieval
        self._providers = tuple(providers)
        self._persona_facts = tuple(persona_facts)
        self._actions = tuple((action.name, action.description) for action in actions)
        self._config = config or ComposerConfig()

    async def compose(
        self,
        message: MemoryRecord,
        *,
        runtime: Any = None,
        state: dict[str, Any] | None = None,
        budget_chars: int | None = None,
    ) -> ContextBundle:
        """Gather every source for *message* and fit them into the budget."""
        start = perf_counter()
        ok = False
        state = {} if state is None else state
        try:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._config.provider_timeout_seconds

            conversation, knowledge, *outputs = await asyncio.gather(
                self._store.list(message.room_id, self._config.conversation_window),
                self._retrieval.retrieve(
                    message.text,
                    session_id=message.room_id,
                    agent_id=message.agent_id,
                    count=self._config.knowledge_count,
                    sample=self._config.knowledge_sample,
                ),
                *(
                    self._run_provider(provider, runtime, message, state, deadline)
                    for provider in self._providers
                ),
            )

            bundle = self._fit(
                budget_chars if budget_chars is not None else self._config.budget_chars,
                conversation,
                knowledge,
                [output for output in outputs if output is not None],
            )
            ok = True
            return bundle
        finally:
            record_latency(
                operation="context_composer.compose",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def _run_provider(
        self,
        provider: Provider,
        runtime: Any,
        message: MemoryRecord,
        state: dict[str, Any],
        deadline: float,
    ) -> ProviderOutput | None:
        """Run one provider; timeouts and exceptions yield no contribution."""
        start = perf_counter()
        ok = False
        remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
        try:
            result = await asyncio.wait_for(
                provider.get(runtime, message, state), timeout=remaining
            )
            ok = True
        except TimeoutError:
            logger.warning("provider %s exceeded the request deadline", provider.name)
            return None
        except ProviderError as exc:
            logger.warning("provider %s had no contribution: %s", provider.name, exc)
            return None
        except Exception:
            logger.exception("provider %s failed", provider.name)
            return None
        finally:
            record_latency(
                operation=f"provider.{provider.name}",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

        if not isinstance(result, str) or not result.strip():
            return None
        return ProviderOutput(
            name=provider.name, priority=provider.priority, text=result.strip()
        )

    def _fit(
        self,
        budget_chars: int,
        conversation: list[MemoryRecord],
        knowledge: list[RetrievedFragment],
        outputs: list[ProviderOutput],
    ) -> ContextBundle:
        bundle = ContextBundle(
            budget_chars=budget_chars,
            provider_header=self._config.provider_header,
        )

        # Newest messages first; once one does not fit, older ones are dropped too.
        for index, record in enumerate(conversation):
            bundle.conversation.insert(0, record)
            if not bundle.fits():
                bundle.conversation.pop(0)
                bundle.dropped["conversation"] = len(conversation) - index
                break

        _fill(bundle, bundle.persona_facts, self._persona_facts, "persona")
        _fill(bundle, bundle.knowledge, knowledge, "knowledge")
        _fill(bundle, bundle.actions, self._actions, "actions")
        ranked = sorted(outputs, key=lambda output: output.priority, reverse=True)
        _fill(bundle, bundle.provider_outputs, ranked, "providers")

        if bundle.dropped:
            logger.info("context truncated to budget=%d dropped=%s", budget_chars, bundle.dropped)
        return bundle


def _fill(bundle: ContextBundle, target: list, items: Sequence, section: str) -> None:
    """Append *items* in order, skipping any that would overflow the budget."""
    for item in items:
        target.append(item)
        if not bundle.fits():
            target.pop()
            bundle.mark_dropped(section)
