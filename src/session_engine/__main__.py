import asyncio
import json
import sys
from pathlib import Path

from loguru import logger

from session_engine.app_config import load_json_config, parse_app_config, resolve_runtime_env
from session_engine.bootstrap import AppRuntime, bootstrap_runtime
from session_engine.errors import NamedError
from session_engine.memory.events import DomainEvent
from session_engine.message import FilePart, JsonSchemaFormat, MessageWithParts, Part, TextPart, UserMessage
from session_engine.tools.read_file_tool import guess_mime
from session_engine.turn_engine import PromptInput

_HELP = "Commands: /undo, /redo, /format <schema.json> | /format off, /quit"


def parse_prompt(text: str, working_directory: str) -> list[Part]:
    """Split a prompt line into a text part plus one file part per ``@path`` token."""
    parts: list[Part] = [TextPart(text=text)]
    for token in text.split():
        if not token.startswith("@") or len(token) == 1:
            continue
        path = Path(working_directory, token[1:]).resolve()
        if not path.exists():
            continue
        mime = "application/x-directory" if path.is_dir() else guess_mime(str(path))
        parts.append(FilePart(url=path.as_uri(), mime=mime, filename=path.name))
    return parts


def _print_deltas(session_id: str):
    def on_event(event: DomainEvent) -> None:
        if event.session_id == session_id and event.type == "message.part.delta":
            sys.stdout.write(event.properties.get("delta", ""))
            sys.stdout.flush()

    return on_event


def _print_result(result: MessageWithParts) -> None:
    info = result.info
    print()
    if info.structured is not None:
        print(json.dumps(info.structured, indent=2))
    if info.error:
        print(f"[error] {info.error['name']}: {info.error.get('data', {}).get('message', '')}")
    tokens = info.tokens
    print(
        f"[tokens in={tokens.input:,} out={tokens.output:,} "
        f"cache r/w={tokens.cache.read:,}/{tokens.cache.write:,} cost=${info.cost:.4f}]"
    )


def _user_message_ids(runtime: AppRuntime, session_id: str) -> list[str]:
    return [
        item.info.id
        for item in runtime.sessions.get_messages(session_id)
        if isinstance(item.info, UserMessage)
    ]


def _load_format(argument: str) -> JsonSchemaFormat | None:
    if argument in ("", "off"):
        return None
    with open(argument) as f:
        return JsonSchemaFormat(schema=json.load(f))


async def main() -> None:
    app = parse_app_config(load_json_config())
    env = resolve_runtime_env(app.provider_name)
    if not env.provider_api_key:
        logger.error(f"{env.provider_env_var} environment variable is required.")
        sys.exit(1)

    runtime = await bootstrap_runtime(app, env)
    session = runtime.sessions.create_session(runtime.working_directory)
    unsubscribe = runtime.events.subscribe(_print_deltas(session.id))
    output_format: JsonSchemaFormat | None = None

    print(f"session-engine ({app.provider_name}/{app.model}), session {session.id}")
    print(_HELP)
    print("Tools: " + ", ".join(t["name"] for t in runtime.tools.definitions()))
    print(f"Working directory: {runtime.working_directory}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if not trimmed:
                continue
            if trimmed in ("/quit", "exit", "quit"):
                break

            try:
                if trimmed == "/undo":
                    info = runtime.revert.undo(session.id, _user_message_ids(runtime, session.id))
                    print(f"Reverted to {info.revert.message_id}" if info.revert else "Nothing to undo")
                    continue
                if trimmed == "/redo":
                    info = runtime.revert.redo(session.id, _user_message_ids(runtime, session.id))
                    print(f"Reverted to {info.revert.message_id}" if info.revert else "Revert cleared")
                    continue
                if trimmed.startswith("/format"):
                    output_format = _load_format(trimmed[len("/format"):].strip())
                    print("Structured output " + ("on" if output_format else "off"))
                    continue
                if trimmed.startswith("/"):
                    print(_HELP)
                    continue

                print()
                result = await runtime.engine.prompt(
                    PromptInput(
                        session_id=session.id,
                        parts=parse_prompt(trimmed, runtime.working_directory),
                        format=output_format,
                    )
                )
                _print_result(result)
                print()
            except (NamedError, OSError, ValueError) as ex:
                logger.error(f"{type(ex).__name__}: {ex}")
    finally:
        unsubscribe()
        await runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
