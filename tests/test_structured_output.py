import asyncio
import unittest

from session_engine.structured_output import STRUCTURED_OUTPUT_TOOL_ID, StructuredCapture, StructuredOutputTool
from session_engine.tool import ToolContext


def _ctx() -> ToolContext:
    return ToolContext(session_id="ses_1", message_id="msg_1", call_id="call_1", agent="build")


class StructuredOutputToolTests(unittest.TestCase):
    def test_execute_captures_value(self) -> None:
        capture = StructuredCapture()
        tool = StructuredOutputTool({"type": "object", "properties": {"name": {"type": "string"}}}, capture)

        result = asyncio.run(tool.execute({"name": "Ada"}, _ctx()))

        self.assertEqual(STRUCTURED_OUTPUT_TOOL_ID, tool.id)
        self.assertTrue(capture.captured)
        self.assertEqual({"name": "Ada"}, capture.value)
        self.assertEqual("Structured output captured successfully.", result.output)
        self.assertEqual({"valid": True}, result.metadata)

    def test_schema_meta_is_dropped(self) -> None:
        tool = StructuredOutputTool({"$schema": "http://json-schema.org/draft-07/schema#", "type": "object"}, StructuredCapture())
        self.assertEqual({"type": "object"}, tool.input_schema)

    def test_first_capture_wins(self) -> None:
        capture = StructuredCapture()
        capture({"a": 1})
        capture({"a": 2})
        self.assertEqual({"a": 1}, capture.value)


if __name__ == "__main__":
    unittest.main()
