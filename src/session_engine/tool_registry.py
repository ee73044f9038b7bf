from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

import httpx
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from session_engine.errors import ToolInputError
from session_engine.tool import Tool, strip_schema_meta
from session_engine.tools.read_file_tool import ReadTool
from session_engine.tools.web.web_fetch_tool import WebFetchTool


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[dict], bool]
    build: Callable[[dict], list[Tool]]


def _always(_: dict) -> bool:
    return True


def _base_tools(ctx: dict) -> list[Tool]:
    return [ReadTool(ctx["working_directory"])]


def _web_enabled(ctx: dict) -> bool:
    return ctx.get("web_enabled", True)


def _web_tools(ctx: dict) -> list[Tool]:
    return [WebFetchTool(transport=ctx.get("http_transport"))]


_GROUPS = [
    ToolGroup(enabled=_always, build=_base_tools),
    ToolGroup(enabled=_web_enabled, build=_web_tools),
]


def get_all(
    working_directory: str | None = None,
    *,
    web_enabled: bool = True,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> list[Tool]:
    ctx = {
        "working_directory": working_directory,
        "web_enabled": web_enabled,
        "http_transport": http_transport,
    }

    tools: list[Tool] = []
    for group in _GROUPS:
        if group.enabled(ctx):
            tools.extend(group.build(ctx))
    return tools


class ToolRegistry:
    """Tools by id, plus argument validation ahead of ``execute``."""

    def __init__(self, tools: list[Tool]):
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Draft7Validator] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        schema = strip_schema_meta(tool.input_schema)
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as ex:
            raise ValueError(f"Tool {tool.id!r} has an invalid input schema: {ex.message}") from ex
        self._tools[tool.id] = tool
        self._validators[tool.id] = Draft7Validator(schema)

    def with_tool(self, tool: Tool) -> ToolRegistry:
        """A copy of this registry with ``tool`` added (or replaced)."""
        return ToolRegistry([*self._tools.values(), tool])

    def get(self, tool_id: str) -> Tool | None:
        return self._tools.get(tool_id)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        return [
            {
                "name": tool.id,
                "description": tool.description,
                "input_schema": strip_schema_meta(tool.input_schema),
            }
            for tool in self._tools.values()
        ]

    def validate_arguments(self, tool_id: str, args: Any) -> dict[str, Any]:
        validator = self._validators.get(tool_id)
        if validator is None:
            raise ToolInputError(tool_id, f"Unknown tool: {tool_id}")
        if not isinstance(args, dict):
            raise ToolInputError(tool_id, "Tool arguments must be a JSON object")
        errors = sorted(validator.iter_errors(args), key=lambda e: list(e.path))
        if errors:
            details = "; ".join(_format_error(e) for e in errors)
            raise ToolInputError(
                tool_id,
                f"The {tool_id} tool was called with invalid arguments: {details}. "
                "Please rewrite the input so it satisfies the expected schema.",
            )
        return args


def _format_error(error) -> str:
    location = ".".join(str(p) for p in error.path)
    return f"{location}: {error.message}" if location else error.message
