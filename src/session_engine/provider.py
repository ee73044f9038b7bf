from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Protocol, Union, runtime_checkable

from session_engine.model_info import ModelInfo
from session_engine.usage import RawUsage


@dataclass(frozen=True)
class ProviderRequest:
    """One model call in internal (Anthropic-style) message format.

    User content blocks are ``text``, ``file`` (``mime``, ``url``, ``filename``)
    and ``tool_result``; assistant blocks are ``text`` and ``tool_use``.
    """

    system: str
    messages: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int = 8192
    temperature: float | None = None
    tool_choice: Literal["auto", "required"] = "auto"


@dataclass(frozen=True)
class TextDelta:
    text: str
    type: Literal["text-delta"] = "text-delta"


@dataclass(frozen=True)
class ToolCallRequested:
    call_id: str
    tool: str
    # Parsed JSON arguments, or the raw string when the model sent invalid JSON.
    input: Any
    type: Literal["tool-call"] = "tool-call"


@dataclass(frozen=True)
class UsageReport:
    usage: RawUsage
    metadata: dict[str, Any] | None = None
    type: Literal["usage"] = "usage"


@dataclass(frozen=True)
class Done:
    finish_reason: str
    type: Literal["done"] = "done"


StreamEvent = Union[TextDelta, ToolCallRequested, UsageReport, Done]


@runtime_checkable
class LLMProvider(Protocol):
    @property
    def capabilities(self) -> ModelInfo: ...

    def stream(
        self,
        request: ProviderRequest,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model response.

        Yields text deltas as they arrive, then any tool calls, then exactly one
        usage report and one ``Done`` carrying the finish reason
        (``end_turn``, ``tool_use``, ``max_tokens``, ...).
        """
        ...

    async def create_message(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        temperature: float | None = 0,
    ) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        ...


def create_provider(provider_name: str, api_key: str, model: ModelInfo) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from session_engine.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, model)
    if name == "openai":
        from session_engine.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, model)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
