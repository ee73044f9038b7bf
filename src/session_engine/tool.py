from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

AskCallback = Callable[[str, dict[str, Any]], Awaitable[None]]
MetadataCallback = Callable[[str | None, dict[str, Any]], None]


async def _allow(_permission: str, _details: dict[str, Any]) -> None:
    return None


def _ignore_metadata(_title: str | None, _metadata: dict[str, Any]) -> None:
    return None


@dataclass
class ToolContext:
    session_id: str
    message_id: str
    call_id: str
    agent: str
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    ask: AskCallback = _allow
    metadata: MetadataCallback = _ignore_metadata


@dataclass
class ToolResult:
    output: str
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    # Unbound file attachments: {"type": "file", "mime", "url", "filename"?}.
    # Ids are assigned when the owning tool part is written.
    attachments: list[dict[str, Any]] | None = None


@runtime_checkable
class Tool(Protocol):
    @property
    def id(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult: ...


def strip_schema_meta(schema: dict[str, Any]) -> dict[str, Any]:
    """Drop the top-level ``$schema`` key, which providers reject in tool parameters."""
    return {k: v for k, v in schema.items() if k != "$schema"}


def to_model_output(tool: Tool, result: ToolResult) -> dict[str, Any]:
    convert = getattr(tool, "to_model_output", None)
    if callable(convert):
        return convert(result)
    return {"type": "text", "value": result.output}
