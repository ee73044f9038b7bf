from __future__ import annotations

import asyncio
import base64
import json
from pathlib import Path
from urllib.parse import unquote, unquote_to_bytes, urlparse

from loguru import logger

from session_engine.errors import AttachmentResolutionError, CancellationError
from session_engine.memory.events import EventBus
from session_engine.message import AgentPart, FilePart, ImagePart, Part, TextPart
from session_engine.tool import ToolContext
from session_engine.tools.read_file_tool import ReadTool

DIRECTORY_MIME = "application/x-directory"


def _synthetic(text: str) -> TextPart:
    return TextPart(text=text, synthetic=True)


def _call_note(args: dict) -> TextPart:
    return _synthetic(f"Called the Read tool with the following input: {json.dumps(args)}")


def _is_text_mime(mime: str) -> bool:
    return mime.startswith("text/") or mime in ("application/json", "application/xml", "application/x-yaml")


class AttachmentResolver:
    """Expands user-submitted parts into the parts stored on the user message.

    Parts are resolved concurrently but the result keeps submission order: each
    input part maps to a contiguous run of output parts at its own index.
    """

    def __init__(self, read_tool: ReadTool, events: EventBus | None = None):
        self._read_tool = read_tool
        self._events = events

    async def resolve(
        self,
        parts: list[Part],
        *,
        session_id: str,
        message_id: str,
        agent: str,
        abort: asyncio.Event | None = None,
    ) -> list[Part]:
        ctx = ToolContext(
            session_id=session_id,
            message_id=message_id,
            call_id="",
            agent=agent,
            abort=abort or asyncio.Event(),
        )
        runs = await asyncio.gather(*(self._resolve_guarded(part, ctx) for part in parts))
        return [part for run in runs for part in run]

    async def _resolve_guarded(self, part: Part, ctx: ToolContext) -> list[Part]:
        # A bad attachment becomes a note in the conversation, never a failed turn.
        try:
            return await self._resolve_one(part, ctx)
        except CancellationError:
            raise
        except Exception as ex:
            target = getattr(part, "filename", None) or getattr(part, "url", None) or getattr(part, "type", "part")
            return [_call_note({"filePath": target}), self._failure(ctx, target, ex)]

    async def _resolve_one(self, part: Part, ctx: ToolContext) -> list[Part]:
        if isinstance(part, (TextPart, ImagePart)):
            return [part]
        if isinstance(part, AgentPart):
            return [
                part,
                _synthetic(
                    f"Delegate this request to the {part.name} agent, using the message and context above "
                    "to write its prompt."
                ),
            ]
        if isinstance(part, FilePart):
            return await self._resolve_file(part, ctx)
        raise ValueError(f"Unsupported part type in prompt: {getattr(part, 'type', type(part).__name__)!r}")

    async def _resolve_file(self, part: FilePart, ctx: ToolContext) -> list[Part]:
        parsed = urlparse(part.url)
        if parsed.scheme in ("http", "https"):
            return [part]
        if parsed.scheme == "data":
            return self._resolve_data_url(part)
        if parsed.scheme != "file":
            raise ValueError(f"Unsupported file URL scheme: {parsed.scheme!r}")

        path = unquote(parsed.path)
        args: dict = {"filePath": path}
        if part.selection is not None:
            args["offset"] = max(1, part.selection.start)
            if part.selection.end is not None:
                args["limit"] = max(1, part.selection.end - part.selection.start + 1)

        if part.mime == DIRECTORY_MIME or _is_text_mime(part.mime):
            note = _call_note(args)
            try:
                result = await self._read_tool.execute(args, ctx)
            except (OSError, ValueError, UnicodeError) as ex:
                return [note, self._failure(ctx, path, ex)]
            return [note, _synthetic(result.output), part]

        try:
            data = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as ex:
            return [_call_note(args), self._failure(ctx, path, ex)]
        return [
            FilePart(
                url=f"data:{part.mime};base64,{base64.b64encode(data).decode('ascii')}",
                mime=part.mime,
                filename=part.filename,
                source=part.source,
                id=part.id,
            )
        ]

    def _resolve_data_url(self, part: FilePart) -> list[Part]:
        if not _is_text_mime(part.mime):
            return [part]
        header, _, payload = part.url.partition(",")
        raw = base64.b64decode(payload) if header.endswith(";base64") else unquote_to_bytes(payload)
        return [
            _call_note({"filePath": part.filename}),
            _synthetic(raw.decode("utf-8", errors="replace")),
            part,
        ]

    def _failure(self, ctx: ToolContext, path: str, ex: Exception) -> TextPart:
        error = AttachmentResolutionError(str(ex), path=path)
        logger.warning(f"Attachment resolution failed for {path}: {ex}")
        if self._events is not None:
            self._events.publish("session.error", ctx.session_id, error=error.to_object())
        return _synthetic(f"Read tool failed to read {path} with the following error: {error.message}")
