from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from loguru import logger

from session_engine import identifier
from session_engine.abort import iterate_until_abort, race_abort
from session_engine.attachments import AttachmentResolver
from session_engine.capacity import CompactionPolicy, is_overflow
from session_engine.compaction import Compactor
from session_engine.errors import (
    CancellationError,
    OutputLengthError,
    StepLimitError,
    StructuredOutputError,
    ToolInputError,
    from_exception,
)
from session_engine.gates import PreTurnGates
from session_engine.history import context_window, to_model_messages
from session_engine.locks import SessionLocks
from session_engine.memory.events import EventBus
from session_engine.memory.session_manager import SessionManager, now_ms
from session_engine.message import (
    AssistantMessage,
    CanonicalTokens,
    FilePart,
    Format,
    JsonSchemaFormat,
    MessageWithParts,
    ModelRef,
    Part,
    TextPart,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
    ToolStateRunning,
    UserMessage,
    bind_part,
    part_to_dict,
)
from session_engine.provider import Done, LLMProvider, ProviderRequest, TextDelta, ToolCallRequested, UsageReport
from session_engine.revert import SessionRevert
from session_engine.structured_output import (
    STRUCTURED_OUTPUT_REMINDER,
    STRUCTURED_OUTPUT_SYSTEM_PROMPT,
    STRUCTURED_OUTPUT_TOOL_ID,
    StructuredCapture,
    StructuredOutputTool,
)
from session_engine.tool import AskCallback, ToolContext, ToolResult, to_model_output
from session_engine.tool_registry import ToolRegistry
from session_engine.usage import get_usage


TOOL_ABORTED = "Tool execution aborted"


class TurnState(str, Enum):
    IDLE = "idle"
    RESOLVING_ATTACHMENTS = "resolving_attachments"
    COMPACTING = "compacting"
    BUILDING_REQUEST = "building_request"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    STRUCTURED_OUTPUT_CAPTURE = "structured_output_capture"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class PromptInput:
    session_id: str
    parts: list[Part]
    agent: str | None = None
    format: Format | None = None
    no_reply: bool = False
    message_id: str | None = None
    system: str | None = None


@dataclass
class TurnSettings:
    system_prompt: str = ""
    max_tokens: int = 8192
    temperature: float | None = None
    max_tool_result_chars: int = 40_000
    stream_timeout_seconds: float | None = 300
    max_steps: int = 50
    agent: str = "build"
    compaction: CompactionPolicy = field(default_factory=CompactionPolicy)


class _Turn:
    """Mutable bookkeeping for one running turn."""

    def __init__(self, session_id: str, assistant: AssistantMessage, output_format: Format | None):
        self.session_id = session_id
        self.assistant = assistant
        self.format = output_format
        self.state = TurnState.IDLE
        self.reports: list[UsageReport] = []
        self.capture = StructuredCapture()
        self.retries = 0
        self.reminder: str | None = None
        self.error: dict[str, Any] | None = None
        self.finish: str | None = None


class TurnEngine:
    def __init__(
        self,
        *,
        provider: LLMProvider,
        sessions: SessionManager,
        tools: ToolRegistry,
        events: EventBus,
        compactor: Compactor,
        attachments: AttachmentResolver,
        gates: PreTurnGates,
        locks: SessionLocks,
        revert: SessionRevert,
        settings: TurnSettings | None = None,
        ask: AskCallback | None = None,
    ) -> None:
        self._provider = provider
        self._sessions = sessions
        self._tools = tools
        self._events = events
        self._compactor = compactor
        self._attachments = attachments
        self._gates = gates
        self._locks = locks
        self._revert = revert
        self._settings = settings or TurnSettings()
        self._ask = ask

    def is_busy(self, session_id: str) -> bool:
        return self._locks.is_busy(session_id)

    async def prompt(self, request: PromptInput, abort: asyncio.Event | None = None) -> MessageWithParts:
        """Run one user turn. Turns on the same session queue behind each other."""
        abort = abort or asyncio.Event()
        with logger.contextualize(session_id=request.session_id):
            async with self._locks.hold(request.session_id):
                return await self._run(request, abort)

    async def _run(self, request: PromptInput, abort: asyncio.Event) -> MessageWithParts:
        session = self._sessions.require_session(request.session_id)
        model = self._provider.capabilities
        agent = request.agent or self._settings.agent

        if not request.no_reply:
            self._gates.check_rate_limit()
            self._gates.assert_authorized()
            # Validation only: tools resolve paths against their own working directory.
            self._gates.resolve_worktree_directory(session.directory)

        if session.revert is not None:
            self._revert.cleanup(session.id, check_busy=False)

        self._transition(session.id, None, TurnState.RESOLVING_ATTACHMENTS)
        parts = await self._attachments.resolve(
            request.parts,
            session_id=session.id,
            message_id=request.message_id or "",
            agent=agent,
            abort=abort,
        )

        # A failed compaction still produces a turn: the user message is kept
        # and the assistant message carries the error.
        compaction_error: dict[str, Any] | None = None
        if not request.no_reply:
            try:
                await self._maybe_compact(session.id, abort)
            except Exception as ex:
                compaction_error = from_exception(ex, provider_id=model.provider_id)
                logger.warning(f"Compaction failed for session {session.id}: {compaction_error['name']}: {ex}")

        user = UserMessage(
            id=identifier.ascending("message", request.message_id),
            session_id=session.id,
            model=ModelRef(provider_id=model.provider_id, model_id=model.id),
            agent=agent,
            created=now_ms(),
            format=request.format,
        )
        stored_user = self._sessions.create_message(user, parts)
        if request.no_reply:
            self._transition(session.id, TurnState.RESOLVING_ATTACHMENTS, TurnState.DONE)
            return stored_user

        assistant = AssistantMessage(
            id=identifier.ascending("message"),
            session_id=session.id,
            parent_id=user.id,
            provider_id=model.provider_id,
            model_id=model.id,
            agent=agent,
            created=now_ms(),
        )
        self._sessions.create_message(assistant)
        turn = _Turn(session.id, assistant, request.format)
        turn.state = TurnState.RESOLVING_ATTACHMENTS
        if compaction_error is not None:
            turn.state = TurnState.COMPACTING
            turn.error = compaction_error
            return self._finalize(turn)

        try:
            await self._loop(turn, request, abort)
        except asyncio.CancelledError:
            turn.error = CancellationError().to_object()
            self._finalize(turn)
            raise
        except Exception as ex:
            turn.error = from_exception(ex, provider_id=model.provider_id)
            logger.warning(f"Turn failed for session {session.id}: {turn.error['name']}: {ex}")
        return self._finalize(turn)

    async def _maybe_compact(self, session_id: str, abort: asyncio.Event) -> None:
        last = self._sessions.last_finished_assistant(session_id)
        if last is None or last.summary:
            return
        if not is_overflow(last.tokens, self._provider.capabilities, self._settings.compaction):
            return
        self._transition(session_id, TurnState.RESOLVING_ATTACHMENTS, TurnState.COMPACTING)
        logger.info(f"Context overflow for session {session_id}; compacting")
        await self._compactor.compact(session_id, abort=abort)

    async def _loop(self, turn: _Turn, request: PromptInput, abort: asyncio.Event) -> None:
        registry = self._tools
        structured = isinstance(turn.format, JsonSchemaFormat)
        if structured:
            registry = registry.with_tool(StructuredOutputTool(turn.format.schema, turn.capture))

        for _step in range(self._settings.max_steps):
            self._set_state(turn, TurnState.BUILDING_REQUEST)
            provider_request = self._build_request(turn, registry, request.system, structured)

            self._set_state(turn, TurnState.STREAMING)
            calls, finish = await self._stream(turn, provider_request, abort)
            turn.finish = finish

            if calls:
                self._set_state(turn, TurnState.TOOL_EXECUTING)
                await self._execute_tools(turn, registry, calls, abort)
                turn.reminder = None
                if turn.capture.captured:
                    self._set_state(turn, TurnState.STRUCTURED_OUTPUT_CAPTURE)
                    return
                continue

            if finish == "max_tokens":
                turn.error = OutputLengthError("The response exceeded the output token limit").to_object()
                return

            if structured and not turn.capture.captured:
                if turn.retries < turn.format.retry_count:
                    turn.retries += 1
                    turn.reminder = STRUCTURED_OUTPUT_REMINDER
                    logger.info(
                        f"Structured output missing; re-prompting ({turn.retries}/{turn.format.retry_count})"
                    )
                    continue
                turn.error = StructuredOutputError(
                    "The model did not produce structured output", retries=turn.retries
                ).to_object()
            return

        logger.warning(f"Turn for session {turn.session_id} stopped after {self._settings.max_steps} steps")
        if structured and not turn.capture.captured:
            turn.error = StructuredOutputError(
                "The model did not produce structured output", retries=turn.retries
            ).to_object()
        else:
            turn.error = StepLimitError(self._settings.max_steps).to_object()

    def _build_request(
        self,
        turn: _Turn,
        registry: ToolRegistry,
        extra_system: str | None,
        structured: bool,
    ) -> ProviderRequest:
        history = context_window(self._sessions.get_messages(turn.session_id))
        messages = to_model_messages(history)
        if turn.reminder:
            messages.append({"role": "user", "content": [{"type": "text", "text": turn.reminder}]})

        system_parts = [self._settings.system_prompt]
        if structured:
            system_parts.append(STRUCTURED_OUTPUT_SYSTEM_PROMPT)
        if extra_system:
            system_parts.append(extra_system)

        tools = registry.definitions() if self._provider.capabilities.capabilities.toolcall else []
        return ProviderRequest(
            system="\n\n".join(p for p in system_parts if p),
            messages=messages,
            tools=tools,
            max_tokens=self._settings.max_tokens,
            temperature=self._settings.temperature,
            tool_choice="required" if structured and tools else "auto",
        )

    async def _stream(
        self,
        turn: _Turn,
        provider_request: ProviderRequest,
        abort: asyncio.Event,
    ) -> tuple[list[ToolCallRequested], str | None]:
        """Run one provider call. Streamed text is kept even when the call fails part way."""
        text_parts: list[str] = []
        calls: list[ToolCallRequested] = []
        finish: str | None = None

        try:
            async with asyncio.timeout(self._settings.stream_timeout_seconds):
                async for event in iterate_until_abort(self._provider.stream(provider_request, abort), abort):
                    if isinstance(event, TextDelta):
                        text_parts.append(event.text)
                        self._events.publish(
                            "message.part.delta",
                            turn.session_id,
                            message_id=turn.assistant.id,
                            delta=event.text,
                        )
                    elif isinstance(event, ToolCallRequested):
                        calls.append(event)
                    elif isinstance(event, UsageReport):
                        turn.reports.append(event)
                    elif isinstance(event, Done):
                        finish = event.finish_reason
        finally:
            text = "".join(text_parts)
            if text:
                self._sessions.attach_part(turn.session_id, turn.assistant.id, TextPart(text=text))
        return calls, finish

    async def _execute_tools(
        self,
        turn: _Turn,
        registry: ToolRegistry,
        calls: list[ToolCallRequested],
        abort: asyncio.Event,
    ) -> None:
        results = await asyncio.gather(*(self._run_tool(turn, registry, call, abort) for call in calls))
        # Results land in call order whatever order they finished in.
        for part, _ in results:
            self._sessions.attach_part(turn.session_id, turn.assistant.id, part)
        if any(aborted for _, aborted in results):
            raise CancellationError()

    async def _run_tool(
        self,
        turn: _Turn,
        registry: ToolRegistry,
        call: ToolCallRequested,
        abort: asyncio.Event,
    ) -> tuple[ToolPart, bool]:
        """Run one call; the flag is set when the call was cut short by an abort."""
        raw_input = call.input if isinstance(call.input, dict) else {"raw": call.input}
        base = ToolPart(
            call_id=call.call_id,
            tool=call.tool,
            state=ToolStateRunning(input=raw_input),
            id=identifier.ascending("part"),
            session_id=turn.session_id,
            message_id=turn.assistant.id,
        )

        try:
            args = registry.validate_arguments(call.tool, call.input)
        except ToolInputError as ex:
            logger.warning(f"Rejected {call.tool} call {call.call_id}: {ex.message}")
            return replace(base, state=ToolStateError(input=raw_input, error=ex.message)), False

        tool = registry.get(call.tool)
        self._publish_part(base)

        def on_metadata(title: str | None, metadata: dict[str, Any]) -> None:
            self._publish_part(replace(base, state=ToolStateRunning(input=args, title=title, metadata=metadata)))

        ctx = ToolContext(
            session_id=turn.session_id,
            message_id=turn.assistant.id,
            call_id=call.call_id,
            agent=turn.assistant.agent,
            abort=abort,
            metadata=on_metadata,
        )
        if self._ask is not None:
            ctx.ask = self._ask

        try:
            result = await race_abort(tool.execute(args, ctx), abort)
        except CancellationError:
            logger.info(f"Tool {call.tool} call {call.call_id} aborted")
            return replace(base, state=ToolStateError(input=args, error=TOOL_ABORTED)), True
        except Exception as ex:
            logger.warning(f"Tool {call.tool} failed: {ex}")
            return replace(base, state=ToolStateError(input=args, error=f"{type(ex).__name__}: {ex}")), False

        output = to_model_output(tool, result)["value"]
        if call.tool != STRUCTURED_OUTPUT_TOOL_ID:
            output = self._truncate_tool_result(output, call.tool)
        completed = ToolStateCompleted(
            input=args,
            output=output,
            title=result.title,
            metadata=result.metadata,
            attachments=self._bind_attachments(turn, result),
        )
        return replace(base, state=completed), False

    def _bind_attachments(self, turn: _Turn, result: ToolResult) -> list[FilePart] | None:
        if not result.attachments:
            return None
        return [
            bind_part(
                FilePart(url=a["url"], mime=a["mime"], filename=a.get("filename")),
                session_id=turn.session_id,
                message_id=turn.assistant.id,
            )
            for a in result.attachments
        ]

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        limit = self._settings.max_tool_result_chars
        if limit <= 0 or len(result) <= limit:
            return result

        original_length = len(result)
        message = f"\n\n[OUTPUT TRUNCATED: Showing {limit:,} of {original_length:,} characters from {tool_name}]"
        logger.warning(f"{tool_name} output truncated from {original_length:,} to {limit:,} chars")
        return result[:limit] + message

    def _finalize(self, turn: _Turn) -> MessageWithParts:
        self._set_state(turn, TurnState.FINALIZING)
        # Usage is only converted here; each step is billed, the last step sizes the context.
        model = self._provider.capabilities
        usage = [get_usage(model, report.usage, report.metadata) for report in turn.reports]
        tokens = usage[-1].tokens if usage else CanonicalTokens()
        cost = sum(result.cost for result in usage)
        info = self._sessions.finalize_message(
            replace(
                turn.assistant,
                tokens=tokens,
                cost=cost,
                structured=turn.capture.value if turn.capture.captured else None,
                error=turn.error,
                finish=turn.finish,
            )
        )
        if turn.error is not None:
            self._events.publish("session.error", turn.session_id, error=turn.error)
            self._set_state(turn, TurnState.FAILED)
        else:
            self._set_state(turn, TurnState.DONE)
        logger.info(
            f"Turn finished for session {turn.session_id}: tokens in={tokens.input} out={tokens.output} "
            f"cache r/w={tokens.cache.read}/{tokens.cache.write}, cost=${cost:.6f}"
        )
        return self._sessions.get_message(turn.session_id, info.id)

    def _set_state(self, turn: _Turn, state: TurnState) -> None:
        self._transition(turn.session_id, turn.state, state)
        turn.state = state

    def _transition(self, session_id: str, old: TurnState | None, new: TurnState) -> None:
        logger.debug(f"Turn {session_id}: {old.value if old else 'idle'} -> {new.value}")
        self._events.publish("session.status", session_id, status=new.value)

    def _publish_part(self, part: ToolPart) -> None:
        self._events.publish(
            "message.part.updated",
            part.session_id,
            message_id=part.message_id,
            part=part_to_dict(part),
        )
