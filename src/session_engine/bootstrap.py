from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from session_engine.app_config import AppConfig, RuntimeEnv
from session_engine.attachments import AttachmentResolver
from session_engine.capacity import CompactionPolicy
from session_engine.compaction import SummarizeCompactor
from session_engine.gates import LocalGates
from session_engine.locks import SessionLocks
from session_engine.logging_config import setup_logging
from session_engine.memory import AsyncEventSink, EventBus, MemoryStore, SessionManager
from session_engine.provider import LLMProvider, create_provider
from session_engine.rate_limit import RateLimiter
from session_engine.revert import SessionRevert
from session_engine.system_prompt import build_system_prompt
from session_engine.tool_registry import ToolRegistry, get_all
from session_engine.tools.read_file_tool import ReadTool
from session_engine.turn_engine import TurnEngine, TurnSettings


@dataclass
class AppRuntime:
    engine: TurnEngine
    sessions: SessionManager
    revert: SessionRevert
    events: EventBus
    memory_store: MemoryStore
    event_sink: AsyncEventSink
    tools: ToolRegistry
    working_directory: str
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.events.drain()
        await self.event_sink.close()
        self.memory_store.close()


async def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    provider: LLMProvider | None = None,
    configure_logging: bool = True,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []

    working_directory = app.working_directory or os.getcwd()
    model = app.model_info()
    if provider is None:
        provider = create_provider(app.provider_name, env.provider_api_key, model)

    db_path = Path(app.memory_db_path)
    if app.memory_db_path != ":memory:" and not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    memory_store = MemoryStore(str(db_path))

    events = EventBus()
    event_sink = AsyncEventSink(memory_store)
    event_sink.attach(events)
    await event_sink.start()

    sessions = SessionManager(memory_store, events)
    locks = SessionLocks()
    revert = SessionRevert(sessions, locks)
    tools = ToolRegistry(get_all(working_directory))

    rate_limiter_factory = None
    if app.rate_limit is not None:
        rate_limit = app.rate_limit
        key = f"{app.provider_name}:{env.provider_env_var}"
        rate_limiter_factory = lambda: RateLimiter(memory_store, rate_limit, key)  # noqa: E731

    engine = TurnEngine(
        provider=provider,
        sessions=sessions,
        tools=tools,
        events=events,
        compactor=SummarizeCompactor(
            provider,
            sessions,
            protected_tail_messages=app.compaction_protected_tail_messages,
        ),
        attachments=AttachmentResolver(ReadTool(working_directory), events),
        gates=LocalGates(api_key=env.provider_api_key, rate_limiter_factory=rate_limiter_factory),
        locks=locks,
        revert=revert,
        settings=TurnSettings(
            system_prompt=build_system_prompt(working_directory, app.agent),
            max_tokens=app.max_tokens,
            temperature=app.temperature,
            max_tool_result_chars=app.max_tool_result_chars,
            stream_timeout_seconds=app.stream_timeout_seconds,
            agent=app.agent,
            compaction=CompactionPolicy(auto=app.compaction_auto),
        ),
    )

    return AppRuntime(
        engine=engine,
        sessions=sessions,
        revert=revert,
        events=events,
        memory_store=memory_store,
        event_sink=event_sink,
        tools=tools,
        working_directory=working_directory,
        log_descriptions=log_descriptions,
    )
