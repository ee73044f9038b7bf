"""Stored messages to provider messages.

Assistant messages hold every step of a turn as one ordered list of parts.
They are split back into alternating ``assistant`` / ``user(tool_result)``
messages wherever a text part follows a tool call.
"""

from __future__ import annotations

from typing import Any

from session_engine.errors import CancellationError
from session_engine.message import (
    AgentPart,
    AssistantMessage,
    FilePart,
    ImagePart,
    MessageWithParts,
    TextPart,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
)

COMPACTION_PROMPT_TEXT = "What did we do so far?"
COMPACTED_UNTIL_KEY = "compacted_until"

# File parts whose content was already inlined as synthetic text.
_INLINED_MIMES = ("text/plain", "application/x-directory")


def summary_boundary(item: MessageWithParts) -> str | None:
    for part in item.parts:
        if isinstance(part, TextPart) and part.metadata:
            return part.metadata.get(COMPACTED_UNTIL_KEY)
    return None


def context_window(items: list[MessageWithParts]) -> list[MessageWithParts]:
    """The messages a model call should see: the latest summary onward.

    When the summary kept a protected tail, the tail messages (which predate
    the summary) follow it.
    """
    for idx in range(len(items) - 1, -1, -1):
        info = items[idx].info
        if isinstance(info, AssistantMessage) and info.summary and info.error is None:
            boundary = summary_boundary(items[idx])
            tail = [item for item in items[:idx] if boundary is not None and item.info.id >= boundary]
            return [items[idx], *tail, *items[idx + 1:]]
    return list(items)


def _file_block(mime: str, url: str, filename: str | None) -> dict[str, Any]:
    block: dict[str, Any] = {"type": "file", "mime": mime, "url": url}
    if filename:
        block["filename"] = filename
    return block


def _user_content(item: MessageWithParts) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = []
    for part in item.parts:
        if isinstance(part, TextPart):
            if not part.ignored and part.text:
                content.append({"type": "text", "text": part.text})
        elif isinstance(part, FilePart):
            if part.mime not in _INLINED_MIMES:
                content.append(_file_block(part.mime, part.url, part.filename))
        elif isinstance(part, ImagePart):
            content.append(_file_block(part.mime, part.url, part.filename))
        elif isinstance(part, AgentPart):
            # The resolver adds the delegation instruction as synthetic text.
            continue
    return content


def _tool_result(part: ToolPart) -> dict[str, Any]:
    state = part.state
    if isinstance(state, ToolStateCompleted):
        content: Any = state.output
        if state.attachments:
            content = [{"type": "text", "text": state.output}] + [
                _file_block(a.mime, a.url, a.filename) for a in state.attachments
            ]
        return {"type": "tool_result", "tool_use_id": part.call_id, "content": content}
    if isinstance(state, ToolStateError):
        return {"type": "tool_result", "tool_use_id": part.call_id, "content": state.error, "is_error": True}
    return {
        "type": "tool_result",
        "tool_use_id": part.call_id,
        "content": "Tool execution was interrupted",
        "is_error": True,
    }


def _assistant_steps(item: MessageWithParts) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    content: list[dict[str, Any]] = []
    results: list[dict[str, Any]] = []

    def flush() -> None:
        if content:
            out.append({"role": "assistant", "content": list(content)})
        if results:
            out.append({"role": "user", "content": list(results)})
        content.clear()
        results.clear()

    for part in item.parts:
        if isinstance(part, TextPart):
            if results:
                flush()
            if part.text and not part.ignored:
                content.append({"type": "text", "text": part.text})
        elif isinstance(part, ToolPart):
            content.append({"type": "tool_use", "id": part.call_id, "name": part.tool, "input": part.state.input})
            results.append(_tool_result(part))
    flush()
    return out


def _include_assistant(item: MessageWithParts) -> bool:
    info = item.info
    if info.error is None:
        return True
    # Aborted turns still show the model what it already produced.
    return CancellationError.is_instance(info.error) and any(
        isinstance(p, (TextPart, ToolPart)) for p in item.parts
    )


def to_model_messages(items: list[MessageWithParts]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for index, item in enumerate(items):
        if isinstance(item.info, AssistantMessage):
            if index == 0 and item.info.summary:
                messages.append({"role": "user", "content": [{"type": "text", "text": COMPACTION_PROMPT_TEXT}]})
            if _include_assistant(item):
                messages.extend(_assistant_steps(item))
            continue
        content = _user_content(item)
        if content:
            messages.append({"role": "user", "content": content})
    return _merge_same_role(messages)


def _merge_same_role(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    merged: list[dict[str, Any]] = []
    for message in messages:
        if merged and merged[-1]["role"] == message["role"]:
            merged[-1] = {"role": message["role"], "content": merged[-1]["content"] + message["content"]}
        else:
            merged.append(message)
    return merged
