"""Generation client adapters and prompt construction.

The language model is an external collaborator: it receives the rendered
context and returns a draft ``{text, action}``.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from nocturne.config import GenerationConfig
from nocturne.engine.composer import ContextBundle
from nocturne.errors import GenerationError
from nocturne.memory.schemas import MemoryRecord


@dataclass(frozen=True)
class DraftResponse:
    """Model output before action dispatch."""

    text: str
    action: str | None = None


@runtime_checkable
class GenerationClient(Protocol):
    """Protocol for generation model adapters."""

    async def generate(self, prompt: str) -> DraftResponse: ...


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

# Regex to strip Markdown code fences wrapping JSON output
_CODE_FENCE_RE = re.compile(
    r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$",
    re.DOTALL,
)
_ACTION_TAG_RE = re.compile(r"\[\s*action\s*:\s*([^\]]+?)\s*\]", re.IGNORECASE)


def parse_draft(raw: str) -> DraftResponse:
    """Read a draft from JSON (optionally fenced) or from tagged plain text.

    Plain text may carry a single ``[ACTION: NAME]`` tag, which is removed
    from the visible text.
    """
    stripped = raw.strip()
    fenced = _CODE_FENCE_RE.match(stripped)
    candidate = fenced.group(1) if fenced else stripped
    try:
        data = json.loads(candidate)
    except ValueError:
        data = None

    if isinstance(data, dict) and isinstance(data.get("text"), str):
        action = data.get("action")
        if not isinstance(action, str) or not action.strip():
            action = None
        return DraftResponse(text=data["text"].strip(), action=action)

    match = _ACTION_TAG_RE.search(stripped)
    if match is None:
        return DraftResponse(text=stripped)
    text = _ACTION_TAG_RE.sub("", stripped).strip()
    return DraftResponse(text=text, action=match.group(1))


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


def build_generation_prompt(
    bundle: ContextBundle, message: MemoryRecord, *, agent_name: str
) -> str:
    """Combine the rendered context with response-format instructions."""
    instructions = (
        f"You are {agent_name}. Stay in character and answer the latest "
        f"message from {message.user_id}.\n"
        "Reply with a JSON object: "
        '{"text": "<your reply>", "action": "<ACTION NAME or null>"}.\n'
        "Only name an action listed under Available Actions."
    )
    context = bundle.render()
    if not context:
        return f"{instructions}\n\n{message.user_id}: {message.text}"
    return f"{context}\n\n{instructions}"


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class StaticGenerationClient(GenerationClient):
    """Deterministic client that always returns the same draft."""

    def __init__(self, text: str = "...", action: str | None = None) -> None:
        self._draft = DraftResponse(text=text, action=action)

    async def generate(self, prompt: str) -> DraftResponse:
        del prompt
        return self._draft


class OpenAICompatibleGenerationClient(GenerationClient):
    """OpenAI-compatible chat-completions adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds

    async def generate(self, prompt: str) -> DraftResponse:
        raw = await asyncio.to_thread(self._complete_sync, prompt)
        return parse_draft(raw)

    def _complete_sync(self, prompt: str) -> str:
        payload = {
            "model": self._model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise GenerationError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise GenerationError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise GenerationError(f"provider IO error: {exc}") from exc

        try:
            content = json.loads(raw)["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise GenerationError(
                "provider response missing choices[0].message.content"
            ) from exc
        if isinstance(content, str):
            return content
        raise GenerationError("provider response content must be a string")


def build_generation_client(config: GenerationConfig) -> GenerationClient:
    """Create a concrete client from ``GenerationConfig``."""
    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "generation_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleGenerationClient(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "static":
        return StaticGenerationClient()
    raise ValueError(
        f"Unsupported generation_config.provider '{config.provider}'. "
        "Supported providers: openai, static."
    )
