import asyncio
import base64
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import unquote, urlparse

import httpx
from loguru import logger

from session_engine.abort import race_abort
from session_engine.tool import ToolContext, ToolResult
from session_engine.tools.html_utilities import html_to_markdown, html_to_text

_MAX_RESPONSE_BYTES = 5 * 1024 * 1024
_DEFAULT_TIMEOUT_SECONDS = 30
_MAX_TIMEOUT_SECONDS = 120
_MAX_REDIRECTS = 5

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_ACCEPT = {
    "markdown": "text/markdown;q=1.0, text/x-markdown;q=0.9, text/plain;q=0.8, text/html;q=0.7, */*;q=0.1",
    "text": "text/plain;q=1.0, text/markdown;q=0.9, text/html;q=0.8, */*;q=0.1",
    "html": "text/html;q=1.0, application/xhtml+xml;q=0.9, text/plain;q=0.8, text/markdown;q=0.7, */*;q=0.1",
}


class WebFetchTool:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    @property
    def id(self) -> str:
        return "webfetch"

    @property
    def description(self) -> str:
        return (
            "Fetch content from a URL. HTML pages are converted to the requested format "
            "(markdown, text or html); other text content is returned as-is. Images are "
            "returned as file attachments. GET requests only."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The HTTP or HTTPS URL to fetch",
                },
                "format": {
                    "type": "string",
                    "enum": ["markdown", "text", "html"],
                    "default": "markdown",
                    "description": "Format to return the content in",
                },
                "timeout": {
                    "type": "number",
                    "description": f"Timeout in seconds (max {_MAX_TIMEOUT_SECONDS})",
                },
            },
            "required": ["url"],
        }

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        url: str = args["url"]
        output_format: str = args.get("format") or "markdown"
        timeout = min(float(args.get("timeout") or _DEFAULT_TIMEOUT_SECONDS), _MAX_TIMEOUT_SECONDS)

        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError("URL must start with http:// or https://")

        await ctx.ask("webfetch", {"url": url, "format": output_format})

        headers = {
            "User-Agent": _USER_AGENT,
            "Accept": _ACCEPT.get(output_format, "*/*"),
            "Accept-Language": "en-US,en;q=0.9",
        }
        response = await self._get(url, headers, timeout, ctx.abort)

        if response.status_code >= 400:
            raise RuntimeError(f"Request failed with status code: {response.status_code}")

        body = response.content
        if len(body) > _MAX_RESPONSE_BYTES:
            raise RuntimeError("Response too large (exceeds 5MB limit)")

        content_type = response.headers.get("content-type", "")
        mime = content_type.split(";")[0].strip().lower()
        title = f"{url} ({content_type})"

        if mime.startswith("image/") and mime != "image/svg+xml":
            logger.debug(f"webfetch: {url} returned image {mime} ({len(body)} bytes)")
            return ToolResult(
                output="Image fetched successfully",
                title=title,
                metadata={},
                attachments=[
                    {
                        "type": "file",
                        "mime": mime,
                        "url": f"data:{mime};base64,{base64.b64encode(body).decode('ascii')}",
                        "filename": _filename_from_url(url, mime),
                    }
                ],
            )

        text = response.text
        is_html = "text/html" in content_type.lower() or "application/xhtml" in content_type.lower()
        if is_html and output_format == "markdown":
            content = html_to_markdown(text)
        elif is_html and output_format == "text":
            content = html_to_text(text)
        else:
            content = text

        return ToolResult(output=content, title=title, metadata={})

    async def _get(
        self,
        url: str,
        headers: dict[str, str],
        timeout: float,
        abort: asyncio.Event,
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            headers=headers,
            timeout=timeout,
            follow_redirects=True,
            max_redirects=_MAX_REDIRECTS,
            transport=self._transport,
        ) as client:
            try:
                return await race_abort(client.get(url), abort)
            except httpx.TimeoutException as ex:
                raise TimeoutError(f"Request timed out after {timeout:g} seconds") from ex
            except httpx.TooManyRedirects as ex:
                raise RuntimeError(f"Too many redirects (max {_MAX_REDIRECTS})") from ex


def _filename_from_url(url: str, mime: str) -> str:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or f"image.{mime.split('/', 1)[1]}"
