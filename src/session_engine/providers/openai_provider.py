import asyncio
import json
from typing import Any, AsyncIterator

import openai
from loguru import logger
from tenacity import retry

from session_engine.abort import iterate_until_abort, race_abort
from session_engine.model_info import ModelInfo
from session_engine.provider import Done, ProviderRequest, StreamEvent, TextDelta, ToolCallRequested, UsageReport
from session_engine.providers.common import default_retry_kwargs, file_placeholder
from session_engine.usage import RawUsage

_RETRYABLE = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.InternalServerError,
)

# Map OpenAI finish reasons to Anthropic-style stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
    "content_filter": "refusal",
}


def _user_content_part(block: dict) -> dict | None:
    kind = block.get("type")
    if kind == "text":
        return {"type": "text", "text": block["text"]}
    if kind == "file":
        mime = block.get("mime", "")
        if mime.startswith("image/") and mime != "image/svg+xml":
            return {"type": "image_url", "image_url": {"url": block["url"]}}
        return {"type": "text", "text": file_placeholder(block)}
    return None


def _tool_result_text(content: Any) -> str:
    if not isinstance(content, list):
        return str(content)
    return "\n".join(
        sub.get("text", "") if sub.get("type") == "text" else file_placeholder(sub)
        for sub in content
        if isinstance(sub, dict)
    )


def _to_openai_messages(
    system_prompt: str,
    messages: list[dict],
) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []

    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")

        if role == "assistant":
            if isinstance(content, str):
                out.append({"role": "assistant", "content": content})
                continue

            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in content:
                if block.get("type") == "text":
                    text_parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    tool_calls.append({
                        "id": block["id"],
                        "type": "function",
                        "function": {
                            "name": block["name"],
                            "arguments": json.dumps(block["input"]),
                        },
                    })

            oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)

        elif role == "user":
            if isinstance(content, str):
                out.append({"role": "user", "content": content})
                continue

            # Tool results must directly follow the assistant tool calls, so they go first.
            user_parts: list[dict] = []
            for block in content:
                if block.get("type") == "tool_result":
                    out.append({
                        "role": "tool",
                        "tool_call_id": block["tool_use_id"],
                        "content": _tool_result_text(block.get("content", "")),
                    })
                    continue
                part = _user_content_part(block)
                if part is not None:
                    user_parts.append(part)

            if user_parts:
                if all(p["type"] == "text" for p in user_parts):
                    out.append({"role": "user", "content": "\n".join(p["text"] for p in user_parts)})
                else:
                    out.append({"role": "user", "content": user_parts})

        else:
            out.append({"role": role, "content": content if isinstance(content, str) else str(content)})

    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert internal (Anthropic-style) tool dicts to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


def _parse_arguments(raw_args: str) -> Any:
    if not raw_args:
        return {}
    try:
        return json.loads(raw_args)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
        return raw_args


class OpenAIProvider:
    def __init__(self, api_key: str, model: ModelInfo):
        self._client = openai.AsyncOpenAI(api_key=api_key)
        self._model = model

    @property
    def capabilities(self) -> ModelInfo:
        return self._model

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def _open_stream(self, kwargs: dict[str, Any]):
        return await self._client.chat.completions.create(**kwargs)

    async def stream(
        self,
        request: ProviderRequest,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        oai_messages = _to_openai_messages(request.system, request.messages)
        oai_tools = _to_openai_tools(request.tools)

        kwargs: dict[str, Any] = dict(
            model=self._model.id,
            max_tokens=request.max_tokens,
            messages=oai_messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if oai_tools:
            kwargs["tools"] = oai_tools
            kwargs["tool_choice"] = "required" if request.tool_choice == "required" else "auto"

        logger.debug(
            f"API request: model={self._model.id}, max_tokens={request.max_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        stream = await race_abort(self._open_stream(kwargs), abort)

        # tool_calls_acc: index -> {"id", "name", "arguments_parts"}
        tool_calls_acc: dict[int, dict] = {}
        finish_reason: str | None = None
        usage = None
        text_len = 0

        async for chunk in iterate_until_abort(stream, abort):
            if getattr(chunk, "usage", None) is not None:
                usage = chunk.usage

            choice = chunk.choices[0] if chunk.choices else None
            if choice is None:
                continue

            if choice.finish_reason:
                finish_reason = choice.finish_reason

            delta = choice.delta
            if delta is None:
                continue

            if delta.content:
                text_len += len(delta.content)
                yield TextDelta(delta.content)

            # Tool calls arrive incrementally by index.
            if delta.tool_calls:
                for tc_delta in delta.tool_calls:
                    acc = tool_calls_acc.setdefault(
                        tc_delta.index, {"id": "", "name": "", "arguments_parts": []}
                    )
                    if tc_delta.id:
                        acc["id"] = tc_delta.id
                    if tc_delta.function:
                        if tc_delta.function.name:
                            acc["name"] = tc_delta.function.name
                        if tc_delta.function.arguments:
                            acc["arguments_parts"].append(tc_delta.function.arguments)

        stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", finish_reason or "end_turn")
        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"text_len={text_len}, tool_calls={len(tool_calls_acc)}"
        )

        for idx in sorted(tool_calls_acc):
            acc = tool_calls_acc[idx]
            yield ToolCallRequested(
                call_id=acc["id"],
                tool=acc["name"],
                input=_parse_arguments("".join(acc["arguments_parts"])),
            )

        yield UsageReport(usage=_raw_usage(usage), metadata=None)
        yield Done(stop_reason)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def create_message(
        self,
        messages: list[dict[str, Any]],
        *,
        max_tokens: int,
        temperature: float | None = 0,
    ) -> str:
        """Non-streaming message creation (used for compaction/summarization)."""
        oai_messages = _to_openai_messages("", messages)
        logger.debug(f"Compaction API request: model={self._model.id}, messages={len(oai_messages)}")
        kwargs: dict[str, Any] = dict(model=self._model.id, max_tokens=max_tokens, messages=oai_messages)
        if temperature is not None:
            kwargs["temperature"] = temperature
        response = await self._client.chat.completions.create(**kwargs)
        text = response.choices[0].message.content or ""
        logger.debug(f"Compaction API response: len={len(text)}")
        return text


def _raw_usage(usage) -> RawUsage:
    if usage is None:
        return RawUsage()
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    return RawUsage(
        input_tokens=getattr(usage, "prompt_tokens", None),
        output_tokens=getattr(usage, "completion_tokens", None),
        total_tokens=getattr(usage, "total_tokens", None),
        reasoning_tokens=getattr(completion_details, "reasoning_tokens", None) if completion_details else None,
        cached_input_tokens=getattr(prompt_details, "cached_tokens", None) if prompt_details else None,
    )
