from __future__ import annotations

from typing import Any, Callable

from session_engine.tool import ToolContext, ToolResult, strip_schema_meta

STRUCTURED_OUTPUT_TOOL_ID = "StructuredOutput"

STRUCTURED_OUTPUT_SYSTEM_PROMPT = (
    "The user asked for structured output. Deliver your final answer by calling the "
    f"{STRUCTURED_OUTPUT_TOOL_ID} tool with arguments that match its schema. "
    "Do not answer in plain text."
)

STRUCTURED_OUTPUT_REMINDER = (
    f"You did not call the {STRUCTURED_OUTPUT_TOOL_ID} tool. Call it now with your final answer "
    "formatted according to its schema."
)

_DESCRIPTION = """Return your final response in the requested structured format.

Rules:
- Call this tool exactly once, after all other work is finished.
- The arguments must be valid JSON that satisfies the schema.
- Nothing else happens after this call; it is your final answer."""


class StructuredOutputTool:
    """Captures the model's final answer as a JSON value matching a caller-supplied schema."""

    def __init__(self, schema: dict[str, Any], on_success: Callable[[Any], None]):
        self._schema = strip_schema_meta(schema)
        self._on_success = on_success

    @property
    def id(self) -> str:
        return STRUCTURED_OUTPUT_TOOL_ID

    @property
    def description(self) -> str:
        return _DESCRIPTION

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._schema

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        self._on_success(args)
        return ToolResult(
            output="Structured output captured successfully.",
            title="Structured Output",
            metadata={"valid": True},
        )

    def to_model_output(self, result: ToolResult) -> dict[str, Any]:
        return {"type": "text", "value": result.output}


class StructuredCapture:
    """Holds the first successfully captured structured value for one turn."""

    def __init__(self) -> None:
        self.value: Any = None
        self.captured = False

    def __call__(self, value: Any) -> None:
        if not self.captured:
            self.value = value
            self.captured = True
