import base64
import mimetypes
import os
from pathlib import Path
from typing import Any

from loguru import logger

from session_engine.tool import ToolContext, ToolResult

DEFAULT_READ_LIMIT = 2000
_MAX_LINE_LENGTH = 2000
_MAX_BYTES = 50 * 1024
_BINARY_EXTENSIONS = {
    ".zip", ".tar", ".gz", ".exe", ".dll", ".so", ".class", ".jar", ".war", ".7z",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods", ".odp",
    ".bin", ".dat", ".obj", ".o", ".a", ".lib", ".wasm", ".pyc", ".pyo",
}


def guess_mime(path: str) -> str:
    mime, _ = mimetypes.guess_type(path)
    return mime or "text/plain"


def is_attachment_mime(mime: str) -> bool:
    return (mime.startswith("image/") and mime != "image/svg+xml") or mime == "application/pdf"


class ReadTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def id(self) -> str:
        return "read"

    @property
    def description(self) -> str:
        return (
            "Read a file or directory from the local filesystem. Text files are returned with "
            "numbered lines; use offset (1-based line number) and limit to page through large "
            "files. Images and PDFs are returned as attachments."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "filePath": {
                    "type": "string",
                    "description": "Absolute or relative path to the file or directory to read",
                },
                "offset": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Line number to start reading from (1-based)",
                },
                "limit": {
                    "type": "integer",
                    "minimum": 1,
                    "description": f"Maximum number of lines to read (default {DEFAULT_READ_LIMIT})",
                },
            },
            "required": ["filePath"],
        }

    def resolve(self, file_path: str) -> Path:
        path = Path(file_path).expanduser()
        if not path.is_absolute() and self._working_directory:
            path = Path(self._working_directory) / path
        return path

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        path = self.resolve(args["filePath"])
        offset = int(args.get("offset") or 1)
        limit = int(args.get("limit") or DEFAULT_READ_LIMIT)
        title = str(path)

        if not path.exists():
            raise FileNotFoundError(self._not_found_message(path))

        await ctx.ask("read", {"path": str(path)})

        if path.is_dir():
            return self._read_directory(path, offset, limit, title)

        mime = guess_mime(str(path))
        if is_attachment_mime(mime):
            data = path.read_bytes()
            kind = "PDF" if mime == "application/pdf" else "Image"
            logger.debug(f"read: {path} as {mime} attachment ({len(data)} bytes)")
            return ToolResult(
                output=f"{kind} read successfully",
                title=title,
                metadata={"truncated": False},
                attachments=[
                    {
                        "type": "file",
                        "mime": mime,
                        "url": f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}",
                        "filename": path.name,
                    }
                ],
            )

        if self._is_binary(path):
            raise ValueError(f"Cannot read binary file: {path}")

        with open(path, encoding="utf-8", errors="replace") as f:
            lines = f.read().split("\n")
        if lines and lines[-1] == "":
            lines.pop()

        selected: list[str] = []
        size = 0
        byte_capped = False
        start = offset - 1
        for line in lines[start:start + limit]:
            if len(line) > _MAX_LINE_LENGTH:
                line = line[:_MAX_LINE_LENGTH] + "..."
            size += len(line.encode("utf-8")) + 1
            if size > _MAX_BYTES:
                byte_capped = True
                break
            selected.append(line)

        last_line = start + len(selected)
        has_more = last_line < len(lines)
        numbered = "\n".join(f"{start + i + 1:05d}| {line}" for i, line in enumerate(selected))
        output = f"<file>\n{numbered}\n\n"
        if byte_capped:
            output += f"(Output truncated at {_MAX_BYTES} bytes. Use 'offset' to read beyond line {last_line})"
        elif has_more:
            output += f"(File has more lines. Use 'offset' to read beyond line {last_line})"
        else:
            output += f"(End of file - total {len(lines)} lines)"
        output += "\n</file>"

        return ToolResult(
            output=output,
            title=title,
            metadata={"truncated": has_more or byte_capped, "preview": "\n".join(selected[:20])},
        )

    @staticmethod
    def _read_directory(path: Path, offset: int, limit: int, title: str) -> ToolResult:
        entries = sorted(
            (f"{entry.name}/" if entry.is_dir() else entry.name) for entry in path.iterdir()
        )
        start = offset - 1
        selected = entries[start:start + limit]
        truncated = start + len(selected) < len(entries)
        body = "\n".join(selected)
        footer = (
            f"(Showing {len(selected)} of {len(entries)} entries. Use 'offset' to read beyond entry {start + len(selected)})"
            if truncated
            else f"({len(entries)} entries)"
        )
        return ToolResult(
            output=f"<path>{path}</path>\n<entries>\n{body}\n{footer}\n</entries>",
            title=title,
            metadata={"truncated": truncated},
        )

    @staticmethod
    def _is_binary(path: Path) -> bool:
        if path.suffix.lower() in _BINARY_EXTENSIONS:
            return True
        with open(path, "rb") as f:
            chunk = f.read(4096)
        if not chunk:
            return False
        if b"\0" in chunk:
            return True
        non_printable = sum(1 for b in chunk if b < 9 or (13 < b < 32))
        return non_printable / len(chunk) > 0.3

    @staticmethod
    def _not_found_message(path: Path) -> str:
        message = f"File not found: {path}"
        directory = path.parent
        if directory.is_dir():
            base = path.name.lower()
            suggestions = [
                str(directory / name)
                for name in sorted(os.listdir(directory))
                if base in name.lower() or name.lower() in base
            ][:3]
            if suggestions:
                message += "\n\nDid you mean one of these?\n" + "\n".join(suggestions)
        return message
