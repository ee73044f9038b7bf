import asyncio
import shutil
from pathlib import Path
from uuid import uuid4

from session_engine.attachments import AttachmentResolver
from session_engine.compaction import NoneCompactor, SummarizeCompactor
from session_engine.errors import AuthError, NotFoundError
from session_engine.gates import LocalGates
from session_engine.history import COMPACTION_PROMPT_TEXT
from session_engine.locks import SessionLocks
from session_engine.message import (
    AssistantMessage,
    CanonicalTokens,
    FilePart,
    JsonSchemaFormat,
    TextPart,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
    UserMessage,
)
from session_engine.model_info import ModelCost, ModelInfo, ModelLimit
from session_engine.provider import Done, TextDelta, ToolCallRequested, UsageReport
from session_engine.revert import SessionRevert
from session_engine.structured_output import STRUCTURED_OUTPUT_REMINDER, STRUCTURED_OUTPUT_SYSTEM_PROMPT
from session_engine.tool import ToolContext, ToolResult
from session_engine.tool_registry import ToolRegistry
from session_engine.tools.read_file_tool import ReadTool
from session_engine.turn_engine import TOOL_ABORTED, PromptInput, TurnEngine, TurnSettings
from session_engine.usage import RawUsage
from tests.memory.base import PROJECT_ROOT, MemoryStoreTestCase

_MODEL = ModelInfo(
    id="claude-test",
    provider_id="anthropic",
    family="anthropic",
    limit=ModelLimit(context=200_000, output=32_000),
    cost=ModelCost(input=3, output=15),
)

_SCHEMA = {"type": "object", "properties": {"answer": {"type": "integer"}}, "required": ["answer"]}


def _usage(input_tokens: int, output_tokens: int) -> UsageReport:
    return UsageReport(RawUsage(input_tokens=input_tokens, output_tokens=output_tokens), {"anthropic": {}})


class _ScriptedProvider:
    """Plays back one scripted list of stream events per call.

    A float in a script sleeps for that many seconds; an exception is raised.
    """

    def __init__(self, *scripts: list):
        self._scripts = list(scripts)
        self.requests: list = []
        self.active = 0
        self.max_active = 0

    @property
    def capabilities(self) -> ModelInfo:
        return _MODEL

    async def stream(self, request, abort=None):
        self.requests.append(request)
        script = self._scripts.pop(0)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for event in script:
                if isinstance(event, BaseException):
                    raise event
                if isinstance(event, float):
                    await asyncio.sleep(event)
                    continue
                yield event
        finally:
            self.active -= 1

    async def create_message(self, messages, *, max_tokens, temperature=0):
        return "Earlier we planned the refactor."


class _EchoTool:
    def __init__(self, tool_id: str = "echo", delay: float = 0):
        self._id = tool_id
        self._delay = delay

    @property
    def id(self) -> str:
        return self._id

    @property
    def description(self) -> str:
        return "Echo text back"

    @property
    def input_schema(self) -> dict:
        return {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]}

    async def execute(self, args: dict, ctx: ToolContext) -> ToolResult:
        await ctx.ask(self._id, args)
        if self._delay:
            await asyncio.sleep(self._delay)
        return ToolResult(output=args["text"], title=self._id)


class _BrokenTool(_EchoTool):
    async def execute(self, args: dict, ctx: ToolContext) -> ToolResult:
        raise RuntimeError("disk on fire")


class _ImageTool(_EchoTool):
    async def execute(self, args: dict, ctx: ToolContext) -> ToolResult:
        return ToolResult(
            output="Image fetched successfully",
            attachments=[{"type": "file", "mime": "image/png", "url": "data:image/png;base64,AA", "filename": "a.png"}],
        )


class _RejectingGates:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def check_rate_limit(self) -> None:
        self.calls.append("rate")

    def assert_authorized(self) -> None:
        self.calls.append("auth")
        raise AuthError("Missing API key for the configured provider")

    def resolve_worktree_directory(self, directory: str) -> str:
        self.calls.append("worktree")
        return directory


class _FailingCompactor:
    async def compact(self, session_id, *, abort=None):
        raise RuntimeError("summarizer down")


class _OpenGates:
    def check_rate_limit(self) -> None:
        return None

    def assert_authorized(self) -> None:
        return None

    def resolve_worktree_directory(self, directory: str) -> str:
        return directory


class TurnEngineTests(MemoryStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._work_dir = PROJECT_ROOT / ".test-artifacts" / f"turn-{uuid4().hex}"
        self._work_dir.mkdir(parents=True, exist_ok=True)
        self._session = self._sessions.create_session(str(self._work_dir))
        self._asked: list[str] = []

    def tearDown(self) -> None:
        shutil.rmtree(self._work_dir, ignore_errors=True)
        super().tearDown()

    def _engine(self, provider, *, tools=(), gates=None, settings=None, compactor=None) -> TurnEngine:
        locks = SessionLocks()

        async def ask(permission: str, details: dict) -> None:
            self._asked.append(permission)

        return TurnEngine(
            provider=provider,
            sessions=self._sessions,
            tools=ToolRegistry(list(tools)),
            events=self._events,
            compactor=compactor or NoneCompactor(),
            attachments=AttachmentResolver(ReadTool(str(self._work_dir)), self._events),
            gates=gates or _OpenGates(),
            locks=locks,
            revert=SessionRevert(self._sessions, locks),
            settings=settings or TurnSettings(system_prompt="You are a test assistant."),
            ask=ask,
        )

    def _prompt(self, engine: TurnEngine, text: str = "hi", abort=None, **kwargs):
        request = PromptInput(session_id=self._session.id, parts=[TextPart(text=text)], **kwargs)
        return asyncio.run(engine.prompt(request, abort))

    def _statuses(self) -> list[str]:
        return [e.properties["status"] for e in self._published if e.type == "session.status"]

    def test_text_turn(self) -> None:
        provider = _ScriptedProvider([TextDelta("Hel"), TextDelta("lo"), _usage(100, 20), Done("end_turn")])

        result = self._prompt(self._engine(provider))

        info = result.info
        self.assertIsInstance(info, AssistantMessage)
        self.assertIsNotNone(info.completed)
        self.assertIsNone(info.error)
        self.assertEqual("end_turn", info.finish)
        self.assertEqual(["Hello"], [p.text for p in result.parts])
        self.assertEqual((100, 20), (info.tokens.input, info.tokens.output))
        self.assertAlmostEqual(0.0006, info.cost)

        request = provider.requests[0]
        self.assertEqual("You are a test assistant.", request.system)
        self.assertEqual([{"role": "user", "content": [{"type": "text", "text": "hi"}]}], request.messages)
        self.assertEqual("auto", request.tool_choice)

        deltas = [e.properties["delta"] for e in self._published if e.type == "message.part.delta"]
        self.assertEqual(["Hel", "lo"], deltas)
        self.assertEqual(
            ["resolving_attachments", "building_request", "streaming", "finalizing", "done"],
            self._statuses(),
        )

        stored = self._sessions.get_messages(self._session.id)
        self.assertIsInstance(stored[0].info, UserMessage)
        self.assertEqual(info.id, stored[1].info.id)
        self.assertEqual(stored[0].info.id, info.parent_id)

    def test_tool_loop(self) -> None:
        provider = _ScriptedProvider(
            [TextDelta("Checking."), ToolCallRequested("c1", "echo", {"text": "pong"}), _usage(100, 10), Done("tool_use")],
            [TextDelta("All done."), _usage(150, 5), Done("end_turn")],
        )

        result = self._prompt(self._engine(provider, tools=[_EchoTool()]))

        self.assertEqual(["text", "tool", "text"], [p.type for p in result.parts])
        tool_part = result.parts[1]
        self.assertIsInstance(tool_part.state, ToolStateCompleted)
        self.assertEqual("pong", tool_part.state.output)
        ids = [p.id for p in result.parts]
        self.assertEqual(sorted(ids), ids)

        second = provider.requests[1].messages
        self.assertEqual(["user", "assistant", "user"], [m["role"] for m in second])
        self.assertEqual({"type": "tool_result", "tool_use_id": "c1", "content": "pong"}, second[2]["content"][0])

        self.assertEqual(150, result.info.tokens.input)
        self.assertAlmostEqual((100 * 3 + 10 * 15 + 150 * 3 + 5 * 15) / 1_000_000, result.info.cost)
        self.assertEqual(["echo"], self._asked)
        self.assertIn("tool_executing", self._statuses())

    def test_parallel_tool_results_keep_call_order(self) -> None:
        provider = _ScriptedProvider(
            [
                ToolCallRequested("c1", "slow", {"text": "first"}),
                ToolCallRequested("c2", "fast", {"text": "second"}),
                Done("tool_use"),
            ],
            [Done("end_turn")],
        )
        engine = self._engine(provider, tools=[_EchoTool("slow", delay=0.05), _EchoTool("fast")])

        result = self._prompt(engine)

        self.assertEqual(["c1", "c2"], [p.call_id for p in result.parts])

    def test_tool_failures_are_reported_to_the_model(self) -> None:
        provider = _ScriptedProvider(
            [
                ToolCallRequested("c1", "echo", {"text": 3}),
                ToolCallRequested("c2", "broken", {"text": "x"}),
                ToolCallRequested("c3", "missing", {}),
                ToolCallRequested("c4", "echo", "{not json"),
                Done("tool_use"),
            ],
            [TextDelta("Sorry."), Done("end_turn")],
        )
        engine = self._engine(provider, tools=[_EchoTool(), _BrokenTool("broken")])

        result = self._prompt(engine)

        states = [p.state for p in result.parts if isinstance(p, ToolPart)]
        self.assertTrue(all(isinstance(s, ToolStateError) for s in states))
        self.assertIn("The echo tool was called with invalid arguments", states[0].error)
        self.assertEqual("RuntimeError: disk on fire", states[1].error)
        self.assertIn("Unknown tool: missing", states[2].error)
        self.assertEqual({"raw": "{not json"}, states[3].input)
        self.assertIsNone(result.info.error)
        results = provider.requests[1].messages[2]["content"]
        self.assertTrue(all(r["is_error"] for r in results))

    def test_long_tool_output_is_truncated(self) -> None:
        provider = _ScriptedProvider(
            [ToolCallRequested("c1", "echo", {"text": "x" * 50}), Done("tool_use")],
            [Done("end_turn")],
        )
        settings = TurnSettings(max_tool_result_chars=10)

        result = self._prompt(self._engine(provider, tools=[_EchoTool()], settings=settings))

        output = result.parts[0].state.output
        self.assertTrue(output.startswith("x" * 10 + "\n\n"))
        self.assertIn("[OUTPUT TRUNCATED: Showing 10 of 50 characters from echo]", output)

    def test_tool_attachments_are_bound(self) -> None:
        provider = _ScriptedProvider(
            [ToolCallRequested("c1", "image", {"text": "a.png"}), Done("tool_use")],
            [Done("end_turn")],
        )

        result = self._prompt(self._engine(provider, tools=[_ImageTool("image")]))

        attachment = result.parts[0].state.attachments[0]
        self.assertIsInstance(attachment, FilePart)
        self.assertTrue(attachment.id.startswith("prt_"))
        self.assertEqual(result.info.id, attachment.message_id)

    def test_structured_output_capture(self) -> None:
        provider = _ScriptedProvider(
            [ToolCallRequested("c1", "StructuredOutput", {"answer": 42}), _usage(10, 5), Done("tool_use")],
        )
        engine = self._engine(provider, tools=[_EchoTool()])

        result = self._prompt(engine, format=JsonSchemaFormat(schema=_SCHEMA))

        self.assertEqual({"answer": 42}, result.info.structured)
        self.assertIsNone(result.info.error)
        self.assertEqual(1, len(provider.requests))
        request = provider.requests[0]
        self.assertEqual("required", request.tool_choice)
        self.assertIn(STRUCTURED_OUTPUT_SYSTEM_PROMPT, request.system)
        self.assertEqual({"echo", "StructuredOutput"}, {t["name"] for t in request.tools})
        self.assertIn("structured_output_capture", self._statuses())
        stored_user = self._sessions.get_messages(self._session.id)[0].info
        self.assertEqual(JsonSchemaFormat(schema=_SCHEMA), stored_user.format)

    def test_invalid_structured_output_is_retried_through_the_tool_loop(self) -> None:
        provider = _ScriptedProvider(
            [ToolCallRequested("c1", "StructuredOutput", {"answer": "many"}), Done("tool_use")],
            [ToolCallRequested("c2", "StructuredOutput", {"answer": 7}), Done("tool_use")],
        )

        result = self._prompt(self._engine(provider), format=JsonSchemaFormat(schema=_SCHEMA))

        self.assertEqual({"answer": 7}, result.info.structured)
        self.assertIsInstance(result.parts[0].state, ToolStateError)

    def test_structured_output_retries_are_exhausted(self) -> None:
        provider = _ScriptedProvider(
            [TextDelta("The answer is 42."), Done("end_turn")],
            [TextDelta("Still 42."), Done("end_turn")],
        )

        result = self._prompt(self._engine(provider), format=JsonSchemaFormat(schema=_SCHEMA, retry_count=1))

        self.assertEqual("StructuredOutputError", result.info.error["name"])
        self.assertEqual(1, result.info.error["data"]["retries"])
        self.assertIsNone(result.info.structured)
        self.assertEqual(2, len(provider.requests))
        last = provider.requests[1].messages[-1]
        self.assertEqual([{"type": "text", "text": STRUCTURED_OUTPUT_REMINDER}], last["content"])
        self.assertEqual(2, len(self._sessions.get_messages(self._session.id)))
        self.assertEqual("failed", self._statuses()[-1])
        errors = [e for e in self._published if e.type == "session.error"]
        self.assertEqual("StructuredOutputError", errors[0].properties["error"]["name"])

    def test_output_length_limit(self) -> None:
        provider = _ScriptedProvider([TextDelta("A very long"), Done("max_tokens")])

        result = self._prompt(self._engine(provider))

        self.assertEqual("MessageOutputLengthError", result.info.error["name"])
        self.assertEqual("max_tokens", result.info.finish)
        self.assertEqual(["A very long"], [p.text for p in result.parts])

    def test_abort_keeps_partial_text(self) -> None:
        provider = _ScriptedProvider([TextDelta("partial"), 10.0, Done("end_turn")])
        engine = self._engine(provider)

        async def scenario():
            abort = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, abort.set)
            return await engine.prompt(
                PromptInput(session_id=self._session.id, parts=[TextPart(text="hi")]), abort
            )

        result = asyncio.run(scenario())

        self.assertEqual("MessageAbortedError", result.info.error["name"])
        self.assertIsNotNone(result.info.completed)
        self.assertEqual(["partial"], [p.text for p in result.parts])
        self.assertEqual(0, provider.active)

    def test_stream_timeout(self) -> None:
        provider = _ScriptedProvider([TextDelta("slow"), 10.0, Done("end_turn")])
        settings = TurnSettings(stream_timeout_seconds=0.05)

        result = self._prompt(self._engine(provider, settings=settings))

        self.assertEqual("MessageAbortedError", result.info.error["name"])
        self.assertEqual("Provider call timed out", result.info.error["data"]["message"])
        self.assertEqual(["slow"], [p.text for p in result.parts])

    def test_provider_failure_keeps_streamed_text(self) -> None:
        provider = _ScriptedProvider([TextDelta("par"), RuntimeError("stream broke")])

        result = self._prompt(self._engine(provider))

        self.assertEqual({"name": "UnknownError", "data": {"message": "stream broke"}}, result.info.error)
        self.assertEqual(["par"], [p.text for p in result.parts])

    def test_no_reply_stores_user_message_only(self) -> None:
        provider = _ScriptedProvider()
        gates = _RejectingGates()

        result = self._prompt(self._engine(provider, gates=gates), text="remember this", no_reply=True)

        self.assertIsInstance(result.info, UserMessage)
        self.assertEqual("remember this", result.parts[0].text)
        self.assertEqual([], provider.requests)
        self.assertEqual([], gates.calls)
        self.assertEqual(1, len(self._sessions.get_messages(self._session.id)))

    def test_gate_failure_raises_before_anything_is_stored(self) -> None:
        provider = _ScriptedProvider()
        gates = _RejectingGates()

        with self.assertRaises(AuthError):
            self._prompt(self._engine(provider, gates=gates))

        self.assertEqual(["rate", "auth"], gates.calls)
        self.assertEqual([], self._sessions.get_messages(self._session.id))
        self.assertEqual([], provider.requests)

    def test_overflow_triggers_compaction(self) -> None:
        u1 = self._user(self._session.id, "plan the refactor")
        self._assistant(
            self._session.id,
            u1,
            [TextPart(text="Here is a long plan.")],
            tokens=CanonicalTokens(input=180_000, output=2_000),
        )
        provider = _ScriptedProvider([TextDelta("Continuing."), Done("end_turn")])
        compactor = SummarizeCompactor(provider, self._sessions, protected_tail_messages=0)

        result = self._prompt(self._engine(provider, compactor=compactor), text="go on")

        self.assertIsNone(result.info.error)
        self.assertIn("compacting", self._statuses())
        messages = provider.requests[0].messages
        self.assertEqual(
            [
                {"role": "user", "content": [{"type": "text", "text": COMPACTION_PROMPT_TEXT}]},
                {"role": "assistant", "content": [{"type": "text", "text": "Earlier we planned the refactor."}]},
                {"role": "user", "content": [{"type": "text", "text": "go on"}]},
            ],
            messages,
        )

    def test_active_revert_is_cleaned_up_before_the_turn(self) -> None:
        u1 = self._user(self._session.id, "old question")
        self._assistant(self._session.id, u1, [TextPart(text="old answer")])
        locks = SessionLocks()
        SessionRevert(self._sessions, locks).revert(self._session.id, u1)
        provider = _ScriptedProvider([TextDelta("fresh"), Done("end_turn")])

        self._prompt(self._engine(provider), text="new question")

        self.assertIsNone(self._sessions.require_session(self._session.id).revert)
        stored = self._sessions.get_messages(self._session.id)
        self.assertEqual(2, len(stored))
        self.assertNotEqual(u1, stored[0].info.id)

    def test_turns_on_one_session_are_serialized(self) -> None:
        provider = _ScriptedProvider(
            [TextDelta("one"), 0.05, Done("end_turn")],
            [TextDelta("two"), 0.05, Done("end_turn")],
        )
        engine = self._engine(provider)
        busy: list[bool] = []

        async def scenario():
            first = asyncio.create_task(
                engine.prompt(PromptInput(session_id=self._session.id, parts=[TextPart(text="a")]))
            )
            second = asyncio.create_task(
                engine.prompt(PromptInput(session_id=self._session.id, parts=[TextPart(text="b")]))
            )
            await asyncio.sleep(0.01)
            busy.append(engine.is_busy(self._session.id))
            return await asyncio.gather(first, second)

        first, second = asyncio.run(scenario())

        self.assertEqual([True], busy)
        self.assertEqual(1, provider.max_active)
        self.assertLess(first.info.id, second.info.id)
        roles = [item.info.role for item in self._sessions.get_messages(self._session.id)]
        self.assertEqual(["user", "assistant", "user", "assistant"], roles)
        self.assertFalse(engine.is_busy(self._session.id))

    def test_step_limit_is_reported(self) -> None:
        step = [ToolCallRequested("c1", "echo", {"text": "again"}), _usage(10, 1), Done("tool_use")]
        provider = _ScriptedProvider(list(step), list(step))
        settings = TurnSettings(max_steps=2)

        result = self._prompt(self._engine(provider, tools=[_EchoTool()], settings=settings))

        self.assertEqual("StepLimitError", result.info.error["name"])
        self.assertEqual(2, result.info.error["data"]["steps"])
        self.assertEqual(2, len(provider.requests))
        self.assertEqual("failed", self._statuses()[-1])

    def test_step_limit_without_structured_output_is_a_structured_error(self) -> None:
        step = [ToolCallRequested("c1", "echo", {"text": "thinking"}), _usage(10, 1), Done("tool_use")]
        provider = _ScriptedProvider(list(step), list(step), list(step))
        settings = TurnSettings(max_steps=3)

        result = self._prompt(
            self._engine(provider, tools=[_EchoTool()], settings=settings),
            format=JsonSchemaFormat(schema=_SCHEMA),
        )

        self.assertEqual("StructuredOutputError", result.info.error["name"])
        self.assertEqual(0, result.info.error["data"]["retries"])
        self.assertIsNone(result.info.structured)
        self.assertEqual(["finalizing", "failed"], self._statuses()[-2:])

    def test_compaction_failure_is_recorded_on_the_assistant_message(self) -> None:
        u1 = self._user(self._session.id, "plan the refactor")
        self._assistant(
            self._session.id,
            u1,
            [TextPart(text="Here is a long plan.")],
            tokens=CanonicalTokens(input=190_000, output=2_000),
        )
        provider = _ScriptedProvider()

        result = self._prompt(self._engine(provider, compactor=_FailingCompactor()), text="go on")

        self.assertEqual({"name": "UnknownError", "data": {"message": "summarizer down"}}, result.info.error)
        self.assertIsNotNone(result.info.completed)
        self.assertEqual([], provider.requests)
        stored = self._sessions.get_messages(self._session.id)
        self.assertEqual(["user", "assistant", "user", "assistant"], [item.info.role for item in stored])
        self.assertEqual("go on", stored[2].parts[0].text)
        self.assertEqual(stored[2].info.id, result.info.parent_id)
        statuses = self._statuses()
        self.assertIn("compacting", statuses)
        self.assertEqual("failed", statuses[-1])

    def test_abort_during_tool_execution_records_the_call(self) -> None:
        provider = _ScriptedProvider(
            [ToolCallRequested("c1", "echo", {"text": "slow"}), _usage(10, 1), Done("tool_use")],
        )
        engine = self._engine(provider, tools=[_EchoTool(delay=10)])

        async def scenario():
            abort = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, abort.set)
            return await engine.prompt(
                PromptInput(session_id=self._session.id, parts=[TextPart(text="hi")]), abort
            )

        result = asyncio.run(scenario())

        self.assertEqual("MessageAbortedError", result.info.error["name"])
        (part,) = result.parts
        self.assertIsInstance(part, ToolPart)
        self.assertEqual("c1", part.call_id)
        self.assertIsInstance(part.state, ToolStateError)
        self.assertEqual(TOOL_ABORTED, part.state.error)
        self.assertEqual({"text": "slow"}, part.state.input)
        self.assertEqual(1, len(provider.requests))
        self.assertEqual("failed", self._statuses()[-1])

    def test_missing_working_directory_stops_the_turn(self) -> None:
        session = self._sessions.create_session(str(self._work_dir / "gone"))
        provider = _ScriptedProvider()
        engine = self._engine(provider, gates=LocalGates(api_key="sk-test"))

        with self.assertRaises(NotFoundError):
            asyncio.run(engine.prompt(PromptInput(session_id=session.id, parts=[TextPart(text="hi")])))

        self.assertEqual([], self._sessions.get_messages(session.id))
        self.assertEqual([], provider.requests)

    def test_unreadable_attachment_does_not_stop_the_turn(self) -> None:
        provider = _ScriptedProvider([TextDelta("I could not read it."), Done("end_turn")])
        parts = [
            FilePart(url="data:text/plain;base64,@@@not-base64", mime="text/plain", filename="bad.txt"),
            FilePart(url="ftp://example.test/notes.txt", mime="text/plain", filename="notes.txt"),
            TextPart(text="after"),
        ]

        result = asyncio.run(self._engine(provider).prompt(PromptInput(session_id=self._session.id, parts=parts)))

        self.assertIsNone(result.info.error)
        user = self._sessions.get_messages(self._session.id)[0]
        texts = [p.text for p in user.parts]
        self.assertEqual(5, len(texts))
        self.assertTrue(texts[1].startswith("Read tool failed to read bad.txt"))
        self.assertTrue(texts[3].startswith("Read tool failed to read notes.txt"))
        self.assertEqual("after", texts[4])
