import asyncio
from typing import Any, AsyncIterator

import anthropic
from loguru import logger
from tenacity import retry

from session_engine.abort import iterate_until_abort, race_abort
from session_engine.model_info import ModelInfo
from session_engine.provider import Done, ProviderRequest, StreamEvent, TextDelta, ToolCallRequested, UsageReport
from session_engine.providers.common import default_retry_kwargs, file_placeholder, split_data_url
from session_engine.usage import RawUsage

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.InternalServerError,
)


def _file_block(block: dict[str, Any]) -> dict[str, Any]:
    mime = block.get("mime", "")
    url = block.get("url", "")
    data = split_data_url(url)
    if mime.startswith("image/") and mime != "image/svg+xml":
        if data is not None:
            return {"type": "image", "source": {"type": "base64", "media_type": data[0], "data": data[1]}}
        if url.startswith(("http://", "https://")):
            return {"type": "image", "source": {"type": "url", "url": url}}
    if mime == "application/pdf" and data is not None:
        return {"type": "document", "source": {"type": "base64", "media_type": "application/pdf", "data": data[1]}}
    return {"type": "text", "text": file_placeholder(block)}


def _to_anthropic_content(content: Any) -> Any:
    if isinstance(content, str):
        return content
    out: list[dict[str, Any]] = []
    for block in content:
        kind = block.get("type")
        if kind == "file":
            out.append(_file_block(block))
        elif kind == "tool_result":
            inner = block.get("content", "")
            if isinstance(inner, list):
                inner = [_file_block(b) if b.get("type") == "file" else b for b in inner]
            converted = {"type": "tool_result", "tool_use_id": block["tool_use_id"], "content": inner}
            if block.get("is_error"):
                converted["is_error"] = True
            out.append(converted)
        else:
            out.append(block)
    return out


def _to_anthropic_messages(messages: list[dict]) -> list[dict]:
    return [{"role": m["role"], "content": _to_anthropic_content(m.get("content", ""))} for m in messages]


class AnthropicProvider:
    def __init__(self, api_key: str, model: ModelInfo):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model

    @property
    def capabilities(self) -> ModelInfo:
        return self._model

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _open_stream(self, kwargs: dict[str, Any]):
        manager = self._client.messages.stream(**kwargs)
        stream = await manager.__aenter__()
        return manager, stream

    async def stream(
        self,
        request: ProviderRequest,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs: dict[str, Any] = {
            "model": self._model.id,
            "max_tokens": request.max_tokens,
            "messages": _to_anthropic_messages(request.messages),
        }
        if request.system:
            kwargs["system"] = request.system
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = {"type": "any" if request.tool_choice == "required" else "auto"}

        logger.debug(
            f"API request: model={self._model.id}, max_tokens={request.max_tokens}, "
            f"messages={len(request.messages)}, tools={len(request.tools)}"
        )
        manager, stream = await race_abort(self._open_stream(kwargs), abort)
        try:
            async for event in iterate_until_abort(stream, abort):
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield TextDelta(event.delta.text)
            response = await race_abort(stream.get_final_message(), abort)
        except BaseException as ex:
            await manager.__aexit__(type(ex), ex, ex.__traceback__)
            raise
        await manager.__aexit__(None, None, None)

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        for block in response.content:
            if block.type == "tool_use":
                yield ToolCallRequested(call_id=block.id, tool=block.name, input=block.input)

        yield UsageReport(
            usage=RawUsage(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cached_input_tokens=getattr(usage, "cache_read_input_tokens", None),
            ),
            metadata={
                "anthropic": {
                    "cacheCreationInputTokens": getattr(usage, "cache_creation_input_tokens", None),
                }
            },
        )
        yield Done(response.stop_reason or "end_turn")

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def create_message(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        temperature: float | None = 0,
    ) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        logger.debug(f"Compaction API request: model={self._model.id}, messages={len(messages)}")
        kwargs: dict[str, Any] = {
            "model": self._model.id,
            "max_tokens": max_tokens,
            "messages": _to_anthropic_messages(messages),
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        response = await self._client.messages.create(**kwargs)
        usage = response.usage
        logger.debug(
            f"Compaction API response: input_tokens={usage.input_tokens}, "
            f"output_tokens={usage.output_tokens}"
        )
        return "".join(getattr(block, "text", "") for block in response.content)
