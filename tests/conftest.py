"""Shared test fixtures for the MCP adapter tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from mcp_adapters.config import ENV_CLAUDE_CONFIG, ENV_SERVERS_DIR

SAMPLE_SERVER = (
    'import { McpServer } from "@modelcontextprotocol/sdk/server/mcp.js";\n'
    'import { z } from "zod";\n'
    "\n"
    'const server = new McpServer({ name: "demo", version: "1.0.0" });\n'
    'server.tool("ping", {}, async () => ({ content: [{ type: "text", text: "pong" }] }));\n'
    "export default server;"
)


@pytest.fixture
def servers_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the creator at an empty servers directory."""
    directory = tmp_path / "project" / "servers"
    monkeypatch.setenv(ENV_SERVERS_DIR, str(directory))
    return directory


@pytest.fixture
def claude_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the creator at a registration document that does not exist yet."""
    path = tmp_path / "claude" / "claude_desktop_config.json"
    monkeypatch.setenv(ENV_CLAUDE_CONFIG, str(path))
    return path


@pytest.fixture
def sample_server(servers_dir: Path) -> Path:
    """A six-line server saved as ``demo.js``."""
    servers_dir.mkdir(parents=True, exist_ok=True)
    path = servers_dir / "demo.js"
    path.write_text(SAMPLE_SERVER, encoding="utf-8", newline="")
    return path


@pytest.fixture
def mock_http(monkeypatch: pytest.MonkeyPatch) -> Callable[[Callable[[httpx.Request], httpx.Response]], list[httpx.Request]]:
    """Serve every httpx.AsyncClient from *handler*; returns the recorded requests.

    Clients keep the base URL, headers and auth their module configures.
    """
    real_client = httpx.AsyncClient

    def install(handler: Callable[[httpx.Request], httpx.Response]) -> list[httpx.Request]:
        requests: list[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        def factory(*args: Any, **kwargs: Any) -> httpx.AsyncClient:
            kwargs["transport"] = httpx.MockTransport(record)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", factory)
        return requests

    return install


def text_of(result: list[Any]) -> str:
    """Concatenated text of the TextContent blocks in a tool result."""
    return "\n".join(block.text for block in result if getattr(block, "type", None) == "text")
