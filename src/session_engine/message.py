"""Session, message and part records.

Every union here (Part, Message, Format, ToolState) is a closed set of frozen
dataclasses keyed by a string discriminant. ``*_from_dict`` dispatches through a
fixed table and rejects unknown discriminants.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal, Union

from session_engine import identifier


# ---------------------------------------------------------------------------
# Tokens


@dataclass(frozen=True)
class CacheTokens:
    read: int = 0
    write: int = 0


@dataclass(frozen=True)
class CanonicalTokens:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache: CacheTokens = field(default_factory=CacheTokens)
    reported_total: int | None = None

    @property
    def total(self) -> int:
        if self.reported_total is not None:
            return self.reported_total
        return self.input + self.output + self.cache.read + self.cache.write

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "cache": {"read": self.cache.read, "write": self.cache.write},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CanonicalTokens:
        if not data:
            return cls()
        cache = data.get("cache") or {}
        return cls(
            input=int(data.get("input", 0)),
            output=int(data.get("output", 0)),
            reasoning=int(data.get("reasoning", 0)),
            cache=CacheTokens(read=int(cache.get("read", 0)), write=int(cache.get("write", 0))),
            reported_total=data.get("total"),
        )


# ---------------------------------------------------------------------------
# Output format


@dataclass(frozen=True)
class TextFormat:
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text"}


@dataclass(frozen=True)
class JsonSchemaFormat:
    schema: dict[str, Any]
    retry_count: int = 2
    type: Literal["json_schema"] = "json_schema"

    def __post_init__(self) -> None:
        if not isinstance(self.schema, dict):
            raise ValueError("json_schema format requires a schema object")
        if isinstance(self.retry_count, bool) or not isinstance(self.retry_count, int) or self.retry_count < 0:
            raise ValueError(f"retry_count must be a non-negative integer, got {self.retry_count!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": "json_schema", "schema": self.schema, "retryCount": self.retry_count}


Format = Union[TextFormat, JsonSchemaFormat]


def format_from_dict(data: dict[str, Any] | None) -> Format:
    if data is None:
        return TextFormat()
    kind = data.get("type")
    if kind == "text":
        return TextFormat()
    if kind == "json_schema":
        if "schema" not in data:
            raise ValueError("json_schema format requires a schema")
        retry_count = data.get("retryCount", data.get("retry_count", 2))
        return JsonSchemaFormat(schema=data["schema"], retry_count=retry_count)
    raise ValueError(f"Unknown output format type: {kind!r}")


# ---------------------------------------------------------------------------
# Parts


@dataclass(frozen=True)
class SourceText:
    value: str
    start: int
    end: int


@dataclass(frozen=True)
class LineRange:
    start: int
    end: int | None = None


@dataclass(frozen=True)
class FileSource:
    """Where a file reference came from: a path on disk or an inline text span."""

    type: Literal["file", "text"]
    text: SourceText
    path: str | None = None


@dataclass(frozen=True)
class TextPart:
    text: str
    id: str = ""
    session_id: str = ""
    message_id: str = ""
    synthetic: bool = False
    ignored: bool = False
    start: int | None = None
    end: int | None = None
    metadata: dict[str, Any] | None = None
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class FilePart:
    url: str
    mime: str
    filename: str | None = None
    source: FileSource | None = None
    selection: LineRange | None = None
    id: str = ""
    session_id: str = ""
    message_id: str = ""
    start: int | None = None
    end: int | None = None
    type: Literal["file"] = "file"


@dataclass(frozen=True)
class ImagePart:
    url: str
    mime: str
    filename: str | None = None
    id: str = ""
    session_id: str = ""
    message_id: str = ""
    type: Literal["image"] = "image"


@dataclass(frozen=True)
class AgentPart:
    name: str
    source: SourceText | None = None
    id: str = ""
    session_id: str = ""
    message_id: str = ""
    start: int | None = None
    end: int | None = None
    type: Literal["agent"] = "agent"


@dataclass(frozen=True)
class ToolStatePending:
    input: dict[str, Any]
    status: Literal["pending"] = "pending"


@dataclass(frozen=True)
class ToolStateRunning:
    input: dict[str, Any]
    title: str | None = None
    metadata: dict[str, Any] | None = None
    status: Literal["running"] = "running"


@dataclass(frozen=True)
class ToolStateCompleted:
    input: dict[str, Any]
    output: str
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    attachments: list[FilePart] | None = None
    status: Literal["completed"] = "completed"


@dataclass(frozen=True)
class ToolStateError:
    input: dict[str, Any]
    error: str
    metadata: dict[str, Any] | None = None
    status: Literal["error"] = "error"


ToolState = Union[ToolStatePending, ToolStateRunning, ToolStateCompleted, ToolStateError]


@dataclass(frozen=True)
class ToolPart:
    call_id: str
    tool: str
    state: ToolState
    id: str = ""
    session_id: str = ""
    message_id: str = ""
    type: Literal["tool"] = "tool"


Part = Union[TextPart, FilePart, ImagePart, AgentPart, ToolPart]


def bind_part(part: Part, *, session_id: str, message_id: str) -> Part:
    """Give an unbound part its owning ids, assigning a fresh ascending id when it has none."""
    return replace(
        part,
        id=part.id or identifier.ascending("part"),
        session_id=session_id,
        message_id=message_id,
    )


def part_to_dict(part: Part) -> dict[str, Any]:
    return asdict(part)


def _source_text(data: dict[str, Any] | None) -> SourceText | None:
    if not data:
        return None
    return SourceText(value=data["value"], start=int(data["start"]), end=int(data["end"]))


def _file_part(data: dict[str, Any]) -> FilePart:
    source = data.get("source")
    selection = data.get("selection")
    return FilePart(
        url=data["url"],
        mime=data["mime"],
        filename=data.get("filename"),
        source=FileSource(
            type=source["type"],
            text=_source_text(source["text"]),
            path=source.get("path"),
        )
        if source
        else None,
        selection=LineRange(start=int(selection["start"]), end=selection.get("end")) if selection else None,
        id=data.get("id", ""),
        session_id=data.get("session_id", ""),
        message_id=data.get("message_id", ""),
        start=data.get("start"),
        end=data.get("end"),
    )


def _tool_state(data: dict[str, Any]) -> ToolState:
    status = data.get("status")
    if status == "pending":
        return ToolStatePending(input=data.get("input", {}))
    if status == "running":
        return ToolStateRunning(input=data.get("input", {}), title=data.get("title"), metadata=data.get("metadata"))
    if status == "completed":
        attachments = data.get("attachments")
        return ToolStateCompleted(
            input=data.get("input", {}),
            output=data["output"],
            title=data.get("title", ""),
            metadata=data.get("metadata") or {},
            attachments=[_file_part(a) for a in attachments] if attachments is not None else None,
        )
    if status == "error":
        return ToolStateError(input=data.get("input", {}), error=data["error"], metadata=data.get("metadata"))
    raise ValueError(f"Unknown tool state status: {status!r}")


_PART_DECODERS = {
    "text": lambda d: TextPart(
        text=d["text"],
        id=d.get("id", ""),
        session_id=d.get("session_id", ""),
        message_id=d.get("message_id", ""),
        synthetic=bool(d.get("synthetic", False)),
        ignored=bool(d.get("ignored", False)),
        start=d.get("start"),
        end=d.get("end"),
        metadata=d.get("metadata"),
    ),
    "file": _file_part,
    "image": lambda d: ImagePart(
        url=d["url"],
        mime=d["mime"],
        filename=d.get("filename"),
        id=d.get("id", ""),
        session_id=d.get("session_id", ""),
        message_id=d.get("message_id", ""),
    ),
    "agent": lambda d: AgentPart(
        name=d["name"],
        source=_source_text(d.get("source")),
        id=d.get("id", ""),
        session_id=d.get("session_id", ""),
        message_id=d.get("message_id", ""),
        start=d.get("start"),
        end=d.get("end"),
    ),
    "tool": lambda d: ToolPart(
        call_id=d["call_id"],
        tool=d["tool"],
        state=_tool_state(d["state"]),
        id=d.get("id", ""),
        session_id=d.get("session_id", ""),
        message_id=d.get("message_id", ""),
    ),
}


def part_from_dict(data: dict[str, Any]) -> Part:
    decoder = _PART_DECODERS.get(data.get("type", ""))
    if decoder is None:
        raise ValueError(f"Unknown part type: {data.get('type')!r}")
    return decoder(data)


# ---------------------------------------------------------------------------
# Messages


@dataclass(frozen=True)
class ModelRef:
    provider_id: str
    model_id: str


@dataclass(frozen=True)
class UserMessage:
    id: str
    session_id: str
    model: ModelRef
    agent: str
    created: int
    format: Format | None = None
    role: Literal["user"] = "user"


@dataclass(frozen=True)
class AssistantMessage:
    id: str
    session_id: str
    parent_id: str
    provider_id: str
    model_id: str
    agent: str
    created: int
    completed: int | None = None
    cost: float = 0.0
    tokens: CanonicalTokens = field(default_factory=CanonicalTokens)
    structured: Any = None
    error: dict[str, Any] | None = None
    finish: str | None = None
    summary: bool = False
    role: Literal["assistant"] = "assistant"


Message = Union[UserMessage, AssistantMessage]


@dataclass(frozen=True)
class MessageWithParts:
    info: Message
    parts: list[Part]


def message_to_dict(message: Message) -> dict[str, Any]:
    if isinstance(message, UserMessage):
        data = {
            "id": message.id,
            "session_id": message.session_id,
            "role": "user",
            "model": {"provider_id": message.model.provider_id, "model_id": message.model.model_id},
            "agent": message.agent,
            "created": message.created,
        }
        if message.format is not None:
            data["format"] = message.format.to_dict()
        return data
    return _without_none(
        {
            "id": message.id,
            "session_id": message.session_id,
            "role": "assistant",
            "parent_id": message.parent_id,
            "provider_id": message.provider_id,
            "model_id": message.model_id,
            "agent": message.agent,
            "created": message.created,
            "completed": message.completed,
            "cost": message.cost,
            "tokens": message.tokens.to_dict(),
            "structured": message.structured,
            "error": message.error,
            "finish": message.finish,
            "summary": message.summary or None,
        }
    )


def message_from_dict(data: dict[str, Any]) -> Message:
    role = data.get("role")
    if role == "user":
        model = data["model"]
        return UserMessage(
            id=data["id"],
            session_id=data["session_id"],
            model=ModelRef(provider_id=model["provider_id"], model_id=model["model_id"]),
            agent=data["agent"],
            created=int(data["created"]),
            format=format_from_dict(data["format"]) if data.get("format") else None,
        )
    if role == "assistant":
        return AssistantMessage(
            id=data["id"],
            session_id=data["session_id"],
            parent_id=data["parent_id"],
            provider_id=data["provider_id"],
            model_id=data["model_id"],
            agent=data["agent"],
            created=int(data["created"]),
            completed=data.get("completed"),
            cost=float(data.get("cost", 0.0)),
            tokens=CanonicalTokens.from_dict(data.get("tokens")),
            structured=data.get("structured"),
            error=data.get("error"),
            finish=data.get("finish"),
            summary=bool(data.get("summary", False)),
        )
    raise ValueError(f"Unknown message role: {role!r}")


# ---------------------------------------------------------------------------
# Sessions


@dataclass(frozen=True)
class RevertPointer:
    message_id: str
    part_id: str | None = None
    snapshot: str | None = None
    diff: str | None = None

    def to_json(self) -> str:
        return json.dumps(_without_none(asdict(self)), ensure_ascii=True)

    @classmethod
    def from_json(cls, raw: str | None) -> RevertPointer | None:
        if not raw:
            return None
        data = json.loads(raw)
        return cls(
            message_id=data["message_id"],
            part_id=data.get("part_id"),
            snapshot=data.get("snapshot"),
            diff=data.get("diff"),
        )


@dataclass(frozen=True)
class SessionInfo:
    id: str
    directory: str
    title: str
    created: int
    updated: int
    parent_id: str | None = None
    archived: int | None = None
    revert: RevertPointer | None = None
    share_url: str | None = None


def _without_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}
