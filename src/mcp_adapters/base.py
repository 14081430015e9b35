"""Shared scaffolding for the adapter MCP servers.

Every adapter is a small module that declares its ``TOOLS`` list, a
name-to-handler map, and optionally resources and prompts.  This module
turns those declarations into an ``mcp.server.Server`` and runs it over
stdio.

Tool handlers take the arguments dict and return a list of MCP content
blocks.  They may be plain functions or coroutines.  Expected failures are
raised as :class:`~mcp_adapters.errors.AdapterError`; the SDK reports them
to the client with ``isError`` set.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union
from urllib.parse import unquote

import httpx
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server
from mcp.types import (
    GetPromptResult,
    ImageContent,
    Prompt,
    PromptArgument,
    PromptMessage,
    Resource,
    ResourceTemplate,
    TextContent,
    Tool,
)

from .config import DEFAULT_LOG_LEVEL, ENV_LOG_LEVEL
from .errors import AdapterError, ConfigurationError, ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

Content = Union[TextContent, ImageContent]
ToolHandler = Callable[[dict[str, Any]], Union[list[Content], Awaitable[list[Content]]]]
ResourceHandler = Callable[[dict[str, str]], Union[str, Awaitable[str]]]
PromptRenderer = Callable[[dict[str, str]], str]

_PARAM_RE = re.compile(r"\{(\w+)\}")

# ---------------------------------------------------------------------------
# Responses and argument helpers
# ---------------------------------------------------------------------------


def text_response(text: str) -> list[Content]:
    """Wrap a string as MCP TextContent."""
    return [TextContent(type="text", text=text)]


def json_response(data: Any) -> list[Content]:
    """Pretty-print *data* as JSON text content."""
    return text_response(json.dumps(data, indent=2, default=str))


def image_content(data: bytes, mime_type: str = "image/png") -> ImageContent:
    return ImageContent(type="image", data=base64.b64encode(data).decode("ascii"), mimeType=mime_type)


def require_args(args: dict[str, Any], *names: str) -> None:
    """Raise ValidationError if any of *names* is missing or empty."""
    missing = [n for n in names if args.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required argument(s): {', '.join(missing)}")


def require_env(*names: str) -> dict[str, str]:
    """Return the values of *names*, raising ConfigurationError listing any that are unset."""
    values = {n: os.environ.get(n, "") for n in names}
    missing = [n for n, v in values.items() if not v]
    if missing:
        raise ConfigurationError(
            f"Missing environment variable(s): {', '.join(missing)}. "
            "Set them in the server's env block of the registration document."
        )
    return values


def int_arg(args: dict[str, Any], name: str, default: int, lo: int, hi: int) -> int:
    """Read an integer argument and check it lies within ``[lo, hi]``."""
    raw = args.get(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None
    if not lo <= value <= hi:
        raise ValidationError(f"{name} must be between {lo} and {hi}, got {value}")
    return value


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "error_description"):
            if body.get(key):
                return str(body[key])
        if body.get("errorMessages"):
            return "; ".join(body["errorMessages"])
        status = body.get("status")
        if isinstance(status, dict) and status.get("error_message"):
            return str(status["error_message"])
    return json.dumps(body)[:300]


async def fetch_json(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> Any:
    """Send one request and decode the JSON body.

    HTTP errors and transport failures become ExternalServiceError carrying
    the service's own error message where it provides one.
    """
    try:
        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        detail = _error_detail(e.response)
        raise ExternalServiceError(f"HTTP {e.response.status_code}: {detail}", e) from e
    except httpx.TimeoutException as e:
        raise ExternalServiceError(f"Request timed out: {method} {url}", e) from e
    except httpx.HTTPError as e:
        raise ExternalServiceError(f"Request failed: {e}", e) from e
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError as e:
        raise ExternalServiceError(f"Invalid JSON from {method} {url}", e) from e


# ---------------------------------------------------------------------------
# Resource and prompt routes
# ---------------------------------------------------------------------------


@dataclass
class ResourceRoute:
    """A fixed resource URI or a ``{param}`` URI template with its reader."""

    uri: str
    name: str
    handler: ResourceHandler
    description: str = ""
    mime_type: str = "application/json"
    _pattern: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        parts = _PARAM_RE.split(self.uri)
        regex = ""
        for i, part in enumerate(parts):
            regex += f"(?P<{part}>[^/]+)" if i % 2 else re.escape(part)
        self._pattern = re.compile(regex)

    @property
    def is_template(self) -> bool:
        return bool(_PARAM_RE.search(self.uri))

    def match(self, uri: str) -> dict[str, str] | None:
        m = self._pattern.fullmatch(uri)
        if m is None:
            return None
        return {k: unquote(v) for k, v in m.groupdict().items()}

    def to_mcp(self) -> Resource | ResourceTemplate:
        if self.is_template:
            return ResourceTemplate(
                uriTemplate=self.uri,
                name=self.name,
                description=self.description or None,
                mimeType=self.mime_type,
            )
        return Resource(
            uri=self.uri,
            name=self.name,
            description=self.description or None,
            mimeType=self.mime_type,
        )


@dataclass
class PromptRoute:
    """A prompt definition and the function that renders its user message."""

    name: str
    description: str
    render: PromptRenderer
    arguments: list[tuple[str, str, bool]] = field(default_factory=list)

    def to_mcp(self) -> Prompt:
        return Prompt(
            name=self.name,
            description=self.description,
            arguments=[
                PromptArgument(name=n, description=d, required=r) for n, d, r in self.arguments
            ],
        )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


async def dispatch(handlers: dict[str, ToolHandler], name: str, arguments: dict[str, Any] | None) -> list[Content]:
    """Run the handler registered for tool *name*."""
    handler = handlers.get(name)
    if handler is None:
        raise ValidationError(f"Unknown tool: {name}")
    try:
        result = handler(arguments or {})
        if inspect.isawaitable(result):
            result = await result
        return result
    except AdapterError as e:
        logger.warning("Tool %s failed: %s", name, e)
        raise
    except Exception as e:
        logger.exception("Tool %s failed", name)
        raise AdapterError(f"Error in {name}: {e}", e) from e


async def read_route(routes: list[ResourceRoute], uri: str) -> tuple[str, str]:
    """Read *uri* through the first matching route.

    Returns ``(text, mime_type)``.  Failures inside a reader come back as
    text so that the client can show them.
    """
    for route in routes:
        params = route.match(uri)
        if params is None:
            continue
        try:
            text = route.handler(params)
            if inspect.isawaitable(text):
                text = await text
        except Exception as e:
            logger.exception("Resource %s failed", uri)
            return f"Error reading {uri}: {e}", "text/plain"
        return text, route.mime_type
    raise ValidationError(f"Unknown resource: {uri}")


def render_prompt(prompts: list[PromptRoute], name: str, arguments: dict[str, str] | None) -> GetPromptResult:
    for prompt in prompts:
        if prompt.name != name:
            continue
        args = arguments or {}
        missing = [n for n, _d, required in prompt.arguments if required and not args.get(n)]
        if missing:
            raise ValidationError(f"Missing prompt argument(s): {', '.join(missing)}")
        return GetPromptResult(
            description=prompt.description,
            messages=[
                PromptMessage(role="user", content=TextContent(type="text", text=prompt.render(args)))
            ],
        )
    raise ValidationError(f"Unknown prompt: {name}")


# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def build_server(
    name: str,
    tools: list[Tool],
    handlers: dict[str, ToolHandler],
    resources: list[ResourceRoute] | None = None,
    prompts: list[PromptRoute] | None = None,
) -> Server:
    """Create an MCP server wired to the given tools, resources and prompts."""
    server = Server(name)
    _register_tools(server, tools, handlers)
    if resources:
        _register_resources(server, resources)
    if prompts:
        _register_prompts(server, prompts)
    return server


def _register_tools(server: Server, tools: list[Tool], handlers: dict[str, ToolHandler]) -> None:
    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return tools

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[Content]:
        return await dispatch(handlers, name, arguments)


def _register_resources(server: Server, routes: list[ResourceRoute]) -> None:
    @server.list_resources()
    async def list_resources() -> list[Resource]:
        return [r.to_mcp() for r in routes if not r.is_template]

    @server.list_resource_templates()
    async def list_resource_templates() -> list[ResourceTemplate]:
        return [r.to_mcp() for r in routes if r.is_template]

    @server.read_resource()
    async def read_resource(uri: Any) -> list[ReadResourceContents]:
        text, mime_type = await read_route(routes, str(uri))
        return [ReadResourceContents(content=text, mime_type=mime_type)]


def _register_prompts(server: Server, prompts: list[PromptRoute]) -> None:
    @server.list_prompts()
    async def list_prompts() -> list[Prompt]:
        return [p.to_mcp() for p in prompts]

    @server.get_prompt()
    async def get_prompt(name: str, arguments: dict[str, str] | None) -> GetPromptResult:
        return render_prompt(prompts, name, arguments)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def configure_logging() -> None:
    """Send log records to stderr; stdout carries the protocol."""
    level = os.environ.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL).upper()
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_stdio(server: Server, on_shutdown: Callable[[], Awaitable[None]] | None = None) -> None:
    """Run *server* over the stdio transport until the client disconnects.

    *on_shutdown* is awaited on the same event loop once the transport closes.
    """

    async def run() -> None:
        try:
            async with stdio_server() as (read_stream, write_stream):
                await server.run(read_stream, write_stream, server.create_initialization_options())
        finally:
            if on_shutdown is not None:
                await on_shutdown()

    asyncio.run(run())
