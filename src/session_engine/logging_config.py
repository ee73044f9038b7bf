import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

# Turns run inside ``logger.contextualize(session_id=...)``; records logged
# outside a turn show this placeholder.
NO_SESSION = "-"

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <magenta>{extra[session_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {extra[session_id]} | {name}:{function}:{line} - {message}"


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def register(self, level: str) -> None:
        logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT)

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    """Rotating plain-text log; ``session`` narrows it to one session's records."""

    kind = "file"

    def __init__(
        self,
        path: str = "session-engine.log",
        rotation: str = "10 MB",
        retention: int = 3,
        session: str | None = None,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._session = session

    def _filter(self, record: dict) -> bool:
        return self._session is None or record["extra"].get("session_id") == self._session

    def _sink_options(self) -> dict[str, Any]:
        return {"format": _FILE_FORMAT}

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            rotation=self._rotation,
            retention=self._retention,
            filter=self._filter,
            **self._sink_options(),
        )

    def describe(self, level: str) -> str:
        scope = f", session {self._session}" if self._session else ""
        return f"{self.kind} ({self._path}, {level}{scope})"


class JsonLogConsumer(FileLogConsumer):
    """One JSON record per line, ``extra.session_id`` included, for log shippers."""

    kind = "json"

    def __init__(self, path: str = "session-engine.jsonl", **kwargs: Any):
        super().__init__(path, **kwargs)

    def _sink_options(self) -> dict[str, Any]:
        return {"serialize": True}


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
    "json": JsonLogConsumer,
}

_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": "session-engine.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers and describe each one."""
    logger.remove()
    logger.configure(extra={"session_id": NO_SESSION})

    descriptions: list[str] = []
    for config in consumers if consumers is not None else _DEFAULT_CONSUMERS:
        kind = config.get("type", "")
        cls = _CONSUMER_TYPES.get(kind)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {kind!r}")
            continue

        sink_level = config.get("level", level)
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
