from __future__ import annotations

import asyncio
import json
from typing import Protocol, runtime_checkable

from loguru import logger

from session_engine import identifier
from session_engine.abort import race_abort
from session_engine.errors import CancellationError
from session_engine.history import COMPACTED_UNTIL_KEY, context_window, to_model_messages
from session_engine.memory.session_manager import SessionManager, now_ms
from session_engine.message import AssistantMessage, MessageWithParts, TextPart, UserMessage
from session_engine.provider import LLMProvider

CHARS_PER_TOKEN = 4


@runtime_checkable
class Compactor(Protocol):
    async def compact(self, session_id: str, *, abort: asyncio.Event | None = None) -> MessageWithParts | None:
        """Summarize a session's history into a summary assistant message. None when nothing was compacted."""
        ...


class NoneCompactor:
    async def compact(self, session_id: str, *, abort: asyncio.Event | None = None) -> MessageWithParts | None:
        return None


class SummarizeCompactor:
    def __init__(
        self,
        provider: LLMProvider,
        sessions: SessionManager,
        *,
        protected_tail_messages: int = 2,
        max_summary_tokens: int = 4096,
    ):
        self._provider = provider
        self._sessions = sessions
        self._protected_tail_messages = max(0, protected_tail_messages)
        self._max_summary_tokens = max_summary_tokens

    async def compact(self, session_id: str, *, abort: asyncio.Event | None = None) -> MessageWithParts | None:
        items = context_window(self._sessions.get_messages(session_id))
        users = [item.info for item in items if isinstance(item.info, UserMessage)]
        if not users or len(items) < 2:
            return None

        tail_start = _tail_start(items, self._protected_tail_messages)
        compactable = items[:tail_start]
        if not compactable:
            return None

        messages = to_model_messages(compactable)
        estimated = estimate_tokens(messages)
        logger.info(
            f"Compaction: estimated ~{estimated:,} tokens, compacting {len(compactable)} messages"
            f" (keeping {len(items) - tail_start})"
        )

        try:
            summary = await race_abort(self._summarize(messages), abort)
        except CancellationError:
            raise
        except Exception as ex:
            logger.warning(f"Compaction failed: {ex}. Continuing with the full history.")
            return None

        model = self._provider.capabilities
        now = now_ms()
        info = AssistantMessage(
            id=identifier.ascending("message"),
            session_id=session_id,
            parent_id=users[-1].id,
            provider_id=model.provider_id,
            model_id=model.id,
            agent="compaction",
            created=now,
            completed=now,
            summary=True,
        )
        metadata = {COMPACTED_UNTIL_KEY: items[tail_start].info.id} if tail_start < len(items) else None
        result = self._sessions.create_message(info, [TextPart(text=summary, metadata=metadata)])

        logger.info(
            f"Compaction: summarized {len(compactable)} messages into ~{estimate_text_tokens(summary):,} tokens"
        )
        return result

    async def _summarize(self, messages: list[dict]) -> str:
        formatted = _format_for_summarization(messages)

        # Cap summarization input
        if len(formatted) > 100_000:
            half = 50_000
            formatted = (
                formatted[:half]
                + "\n\n[...middle of conversation omitted for brevity...]\n\n"
                + formatted[-half:]
            )

        return await self._provider.create_message(
            [{"role": "user", "content": _SUMMARIZE_PROMPT + formatted}],
            max_tokens=self._max_summary_tokens,
            temperature=0,
        )


def _tail_start(items: list[MessageWithParts], protected: int) -> int:
    """Index where the protected tail begins, moved forward so the tail opens on a user message."""
    start = max(0, len(items) - protected)
    while start < len(items) and not isinstance(items[start].info, UserMessage):
        start += 1
    return start


def estimate_text_tokens(text: str) -> int:
    return max(0, round(len(text or "") / CHARS_PER_TOKEN))


def estimate_tokens(messages: list[dict]) -> int:
    total_chars = 0
    for msg in messages:
        content = msg.get("content", "")
        if isinstance(content, str):
            total_chars += len(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, str):
                    total_chars += len(block)
                elif isinstance(block, dict):
                    block_type = block.get("type", "")
                    if block_type == "text":
                        total_chars += len(block.get("text", ""))
                    elif block_type == "tool_use":
                        total_chars += len(block.get("name", ""))
                        total_chars += len(json.dumps(block.get("input", {})))
                    elif block_type == "tool_result":
                        result_content = block.get("content", "")
                        if isinstance(result_content, str):
                            total_chars += len(result_content)
                        elif isinstance(result_content, list):
                            for sub in result_content:
                                if isinstance(sub, dict) and sub.get("type") == "text":
                                    total_chars += len(sub.get("text", ""))
    return total_chars // CHARS_PER_TOKEN


def _format_for_summarization(messages: list[dict]) -> str:
    parts = []
    for msg in messages:
        role = msg.get("role", "unknown")
        content = msg.get("content", "")

        if isinstance(content, str):
            parts.append(f"[{role}]: {content}")
            continue

        block_texts = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            if block_type == "text":
                block_texts.append(block.get("text", ""))
            elif block_type == "file":
                block_texts.append(f"[File: {block.get('filename') or block.get('mime', '')}]")
            elif block_type == "tool_use":
                name = block.get("name", "")
                inp = json.dumps(block.get("input", {}), indent=None)
                if len(inp) > 200:
                    inp = inp[:200] + "..."
                block_texts.append(f"[Tool call: {name}({inp})]")
            elif block_type == "tool_result":
                tool_id = block.get("tool_use_id", "")
                result_content = block.get("content", "")
                if isinstance(result_content, list):
                    result_content = "\n".join(
                        sub.get("text", "")
                        for sub in result_content
                        if isinstance(sub, dict) and sub.get("type") == "text"
                    )
                block_texts.append(f"[Tool result ({tool_id})]: {_preview_text(str(result_content))}")
        parts.append(f"[{role}]: " + "\n".join(block_texts))

    return "\n\n".join(parts)


def _preview_text(text: str) -> str:
    if len(text) <= 700:
        return text
    return text[:500] + "\n[...truncated...]\n" + text[-200:]


_SUMMARIZE_PROMPT = """\
Summarize the following conversation between a user and an AI assistant so the
conversation can continue from the summary alone. Preserve precisely:
- What the user asked for, including constraints and preferences
- Decisions made and why
- Files, URLs, identifiers and data points that may be needed later
- What was done, what is in progress, and the next steps

Leave out raw tool output; note what was retrieved and the key findings.

Format as a concise narrative summary.

---
CONVERSATION HISTORY:

"""
