"""MCP server that writes, edits, registers and test-runs Node MCP servers.

Generated sources live in ``MCP_SERVERS_DIR`` (default
``~/.mcp-adapters/servers``); ``package.json`` lives in its parent.  The
host registration document is located per platform, or via
``CLAUDE_CONFIG_PATH``.

Usage:
    mcp-creator

    MCP_SERVERS_DIR=/path/to/servers mcp-creator
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from mcp.server import Server
from mcp.types import TextContent, Tool

from . import config, dependencies, generator, registry, runner
from .base import (
    PromptRoute,
    ResourceRoute,
    ToolHandler,
    build_server,
    configure_logging,
    int_arg,
    require_args,
    run_stdio,
    text_response,
)
from .errors import AdapterError, ExternalServiceError, ValidationError
from .templates import HELP_TEXT, RUN_HINTS, SERVER_TEMPLATE, SYSTEM_PROMPT

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

_SERVER_NAME = {
    "type": "string",
    "description": "Server name. Unsafe characters become '_' and a trailing .js is ignored.",
}


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="listServers",
            description="List the MCP servers created so far.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="getTemplate",
            description="Return an example MCP server to use as a starting point.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="getSdkInfo",
            description="Fetch the TypeScript MCP SDK README for reference.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="createMcpServer",
            description=(
                "Save a new MCP server file and, by default, register it with the host. "
                "Fails if a server with that name exists unless overwriteExisting is true."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "serverName": _SERVER_NAME,
                    "serverCode": {"type": "string", "description": "Full JavaScript source."},
                    "registerWithClaude": {
                        "type": "boolean",
                        "description": "Add or replace the host registration entry (default true).",
                        "default": True,
                    },
                    "overwriteExisting": {
                        "type": "boolean",
                        "description": "Replace an existing file of the same name (default false).",
                        "default": False,
                    },
                },
                "required": ["serverName", "serverCode"],
            },
        ),
        Tool(
            name="updateMcpServer",
            description=(
                "Edit an existing server. 'full' replaces the file, 'section' replaces "
                "startLine..endLine (1-based, inclusive), 'add' inserts after insertAfterLine "
                "(0 prepends). Line numbers refer to getServerContent output."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "serverName": _SERVER_NAME,
                    "updateType": {"type": "string", "enum": ["full", "section", "add"]},
                    "code": {"type": "string", "description": "New code for the file, range or insertion."},
                    "startLine": {"type": "integer", "minimum": 1},
                    "endLine": {"type": "integer", "minimum": 1},
                    "insertAfterLine": {"type": "integer", "minimum": 0},
                    "description": {"type": "string", "description": "What the change does."},
                },
                "required": ["serverName", "updateType", "code"],
            },
        ),
        Tool(
            name="getServerContent",
            description="Show a server's source with line numbers.",
            inputSchema={
                "type": "object",
                "properties": {"serverName": _SERVER_NAME},
                "required": ["serverName"],
            },
        ),
        Tool(
            name="getClaudeConfig",
            description="Show the host's registration document.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="updateClaudeConfig",
            description=(
                "Replace the host's registration document. Must be a JSON object; "
                "mcpServers entries need command and args."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "configData": {"type": "string", "description": "The complete JSON document."},
                },
                "required": ["configData"],
            },
        ),
        Tool(
            name="analyzeServerDependencies",
            description="List the npm packages a server imports (excluding built-ins and the MCP SDK).",
            inputSchema={
                "type": "object",
                "properties": {"serverName": _SERVER_NAME},
                "required": ["serverName"],
            },
        ),
        Tool(
            name="installServerDependencies",
            description=(
                "Install npm packages for the generated servers, falling back to yarn. "
                "Packages already in package.json are skipped."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "dependencies": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": "Package names, optionally with @version.",
                    },
                    "installTypes": {
                        "type": "boolean",
                        "description": "Also install @types packages where they exist (default true).",
                        "default": True,
                    },
                },
                "required": ["dependencies"],
            },
        ),
        Tool(
            name="runServerDirectly",
            description=(
                "Start a server with node for a limited time and report its output. "
                "Any stderr output or a non-zero exit marks the run as failed."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "serverName": _SERVER_NAME,
                    "timeout": {
                        "type": "integer",
                        "description": "Milliseconds before the process is killed (default 10000).",
                        "default": config.DEFAULT_RUN_TIMEOUT_MS,
                        "minimum": 100,
                        "maximum": 600000,
                    },
                },
                "required": ["serverName"],
            },
        ),
        Tool(
            name="getHelp",
            description="Describe the creator's tools and the usual workflow.",
            inputSchema={"type": "object", "properties": {}},
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.HTTP_TIMEOUT, follow_redirects=True)


async def _fetch_sdk_readme() -> str:
    async with _make_client() as client:
        try:
            response = await client.get(config.SDK_README_URL)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                f"Could not fetch SDK documentation ({e}). See {config.SDK_REPO_URL}", e
            ) from e
        return response.text


def _content_block(content: str) -> str:
    return (
        f"Total lines: {len(generator.split_lines(content))}\n\n"
        f"{generator.number_lines(content)}"
    )


# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


def _handle_list_servers(args: dict[str, Any]) -> list[TextContent]:
    names = generator.list_servers(config.servers_dir())
    if not names:
        return text_response("No MCP servers found.")
    return text_response("Available MCP servers:\n" + "\n".join(f"- {n}" for n in names))


def _handle_get_template(args: dict[str, Any]) -> list[TextContent]:
    return text_response(f"Example MCP server:\n\n```javascript\n{SERVER_TEMPLATE}```")


async def _handle_get_sdk_info(args: dict[str, Any]) -> list[TextContent]:
    return text_response(await _fetch_sdk_readme())


def _handle_create(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "serverName")
    code = args.get("serverCode")
    if not isinstance(code, str):
        raise ValidationError("serverCode must be a string")
    path = generator.create_server(
        config.servers_dir(),
        args["serverName"],
        code,
        overwrite=bool(args.get("overwriteExisting", False)),
    )
    lines = [f'Server "{path.stem}" saved to {path}.']
    if args.get("registerWithClaude", True):
        config_path = config.claude_config_path()
        try:
            registry.register_server(config_path, path.stem, path.resolve())
            lines.append(f'Server registered with Claude Desktop as "{path.stem}" ({config_path}).')
        except (AdapterError, OSError) as e:
            logger.warning("Registration of %s failed: %s", path.stem, e)
            lines.append(f"Registration failed: {e}. The server file was still saved.")
    lines.append("")
    lines.append(_content_block(code))
    return text_response("\n".join(lines))


def _handle_update(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "serverName", "updateType")
    code = args.get("code")
    if not isinstance(code, str):
        raise ValidationError("code must be a string")
    update_type = args["updateType"]
    directory = config.servers_dir()
    name = args["serverName"]

    if update_type == "full":
        path = generator.replace_server(directory, name, code)
        content = code
        detail = "Replaced the whole file."
    elif update_type == "section":
        start, end = args.get("startLine"), args.get("endLine")
        if start is None or end is None:
            raise ValidationError("startLine and endLine are required for section updates")
        path, content = generator.update_section(directory, name, int(start), int(end), code)
        detail = (
            f"Update details: replaced lines {start}-{end} "
            f"with {len(generator.split_lines(code))} line(s)."
        )
    elif update_type == "add":
        after = args.get("insertAfterLine")
        if after is None:
            raise ValidationError("insertAfterLine is required for add updates")
        path, content = generator.insert_after(directory, name, int(after), code)
        detail = (
            f"Addition details: inserted {len(generator.split_lines(code))} line(s) "
            f"after line {after}."
        )
    else:
        raise ValidationError(f"Unknown updateType: {update_type!r} (use full, section or add)")

    lines = [f'Server "{path.stem}" updated.', detail]
    if args.get("description"):
        lines.append(f"Description: {args['description']}")
    lines.append("")
    lines.append(_content_block(content))
    return text_response("\n".join(lines))


def _handle_get_content(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "serverName")
    path, content = generator.read_server(config.servers_dir(), args["serverName"])
    return text_response(f'Server "{path.stem}" ({path})\n{_content_block(content)}')


def _handle_get_config(args: dict[str, Any]) -> list[TextContent]:
    path = config.claude_config_path()
    text = registry.read_text(path)
    if text is None:
        return text_response(f"Claude Desktop configuration not found at {path}")
    return text_response(text)


def _handle_update_config(args: dict[str, Any]) -> list[TextContent]:
    raw = args.get("configData")
    if isinstance(raw, dict):
        raw = json.dumps(raw)
    if not isinstance(raw, str) or not raw.strip():
        raise ValidationError("configData must be a JSON document")
    path = config.claude_config_path()
    data = registry.replace_document(path, raw)
    count = len(data.get(registry.SERVERS_KEY) or {})
    return text_response(
        f"Claude Desktop configuration updated at {path} ({count} server(s) registered). "
        "Restart Claude Desktop to apply the changes."
    )


def _handle_analyze(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "serverName")
    path, content = generator.read_server(config.servers_dir(), args["serverName"])
    packages = dependencies.external_packages(content)
    if not packages:
        return text_response(f'Server "{path.stem}" does not have external dependencies.')
    return text_response(
        f'Server "{path.stem}" depends on these packages: {", ".join(packages)}\n\n'
        "Install them with installServerDependencies."
    )


async def _handle_install(args: dict[str, Any]) -> list[TextContent]:
    packages = args.get("dependencies")
    if not isinstance(packages, list) or not all(isinstance(p, str) for p in packages):
        raise ValidationError("dependencies must be a list of package names")
    result = await dependencies.install_packages(
        config.project_dir(),
        packages,
        install_types=bool(args.get("installTypes", True)),
    )
    return text_response(result.summary())


async def _handle_run(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "serverName")
    timeout_ms = int_arg(args, "timeout", config.DEFAULT_RUN_TIMEOUT_MS, 100, 600_000)
    path, _content = generator.read_server(config.servers_dir(), args["serverName"])
    result = await runner.run_server_directly(path, timeout_ms)

    if result.timed_out:
        status = f"Server ran for {timeout_ms} ms and was stopped."
    else:
        status = f"Server exited with code {result.returncode}."
    report = "\n".join(
        [
            f'Run of "{path.stem}": {status}',
            "",
            "STDOUT:",
            result.stdout.strip() or "(empty)",
            "",
            "STDERR:",
            result.stderr.strip() or "(empty)",
        ]
    )
    if result.errored:
        raise ExternalServiceError(f"{report}\n\n{RUN_HINTS}")
    return text_response(f"{report}\n\nNo errors detected.")


def _handle_help(args: dict[str, Any]) -> list[TextContent]:
    return text_response(HELP_TEXT)


HANDLERS: dict[str, ToolHandler] = {
    "listServers": _handle_list_servers,
    "getTemplate": _handle_get_template,
    "getSdkInfo": _handle_get_sdk_info,
    "createMcpServer": _handle_create,
    "updateMcpServer": _handle_update,
    "getServerContent": _handle_get_content,
    "getClaudeConfig": _handle_get_config,
    "updateClaudeConfig": _handle_update_config,
    "analyzeServerDependencies": _handle_analyze,
    "installServerDependencies": _handle_install,
    "runServerDirectly": _handle_run,
    "getHelp": _handle_help,
}

RESOURCES = [
    ResourceRoute(
        uri="mcp-docs://typescript-sdk",
        name="TypeScript MCP SDK documentation",
        description="README of the TypeScript MCP SDK",
        handler=lambda params: _fetch_sdk_readme(),
        mime_type="text/markdown",
    ),
]

PROMPTS = [
    PromptRoute(
        name="system prompt",
        description="Instructions for creating and maintaining MCP servers with this server",
        render=lambda args: SYSTEM_PROMPT,
    ),
]

# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def create_mcp_server(name: str = "mcp-server-creator") -> Server:
    """Create the creator server with all tools, resources and prompts."""
    return build_server(name, TOOLS, HANDLERS, RESOURCES, PROMPTS)


def main_stdio() -> None:
    """Run the creator over stdio."""
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()
