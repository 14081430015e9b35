"""Tests for the creator MCP server tool handlers."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
from conftest import SAMPLE_SERVER, text_of

from mcp_adapters import creator_server, dependencies, runner
from mcp_adapters.base import dispatch, read_route, render_prompt
from mcp_adapters.config import SDK_REPO_URL
from mcp_adapters.creator_server import HANDLERS, PROMPTS, RESOURCES, TOOLS, create_mcp_server
from mcp_adapters.errors import ExternalServiceError, ValidationError
from mcp_adapters.runner import CommandResult


async def call(name: str, **arguments: object) -> str:
    return text_of(await dispatch(HANDLERS, name, arguments))


class TestToolDefinitions:
    def test_create_server(self) -> None:
        assert create_mcp_server() is not None

    def test_every_tool_has_handler(self) -> None:
        assert {t.name for t in TOOLS} == set(HANDLERS)

    def test_required_tools_present(self) -> None:
        names = {t.name for t in TOOLS}
        for expected in [
            "listServers",
            "getTemplate",
            "getSdkInfo",
            "createMcpServer",
            "updateMcpServer",
            "getServerContent",
            "getClaudeConfig",
            "updateClaudeConfig",
            "analyzeServerDependencies",
            "installServerDependencies",
            "runServerDirectly",
            "getHelp",
        ]:
            assert expected in names, f"Missing tool: {expected}"

    def test_all_tools_have_schemas(self) -> None:
        for tool in TOOLS:
            assert tool.inputSchema.get("type") == "object"
            assert tool.description


class TestListAndCreate:
    @pytest.mark.asyncio
    async def test_list_empty(self, servers_dir: Path) -> None:
        assert await call("listServers") == "No MCP servers found."

    @pytest.mark.asyncio
    async def test_create_registers(self, servers_dir: Path, claude_config: Path) -> None:
        text = await call("createMcpServer", serverName="my demo", serverCode=SAMPLE_SERVER)
        path = servers_dir / "my_demo.js"
        assert path.read_text() == SAMPLE_SERVER
        assert "Server registered with Claude Desktop" in text
        assert "Total lines: 6" in text
        assert "   1| import" in text
        entry = json.loads(claude_config.read_text())["mcpServers"]["my_demo"]
        assert entry["command"] == "node"
        assert entry["args"] == [str(path.resolve())]
        assert "- my_demo.js" in await call("listServers")

    @pytest.mark.asyncio
    async def test_create_without_registration(self, servers_dir: Path, claude_config: Path) -> None:
        await call("createMcpServer", serverName="demo", serverCode="x", registerWithClaude=False)
        assert (servers_dir / "demo.js").exists()
        assert not claude_config.exists()

    @pytest.mark.asyncio
    async def test_create_existing_refused(self, sample_server: Path, claude_config: Path) -> None:
        with pytest.raises(ValidationError, match="updateMcpServer"):
            await call("createMcpServer", serverName="demo", serverCode="other")
        assert sample_server.read_text() == SAMPLE_SERVER
        assert not claude_config.exists()

    @pytest.mark.asyncio
    async def test_create_overwrite(self, sample_server: Path, claude_config: Path) -> None:
        await call("createMcpServer", serverName="demo", serverCode="other", overwriteExisting=True)
        assert sample_server.read_text() == "other"

    @pytest.mark.asyncio
    async def test_registration_failure_not_fatal(self, servers_dir: Path, claude_config: Path) -> None:
        claude_config.mkdir(parents=True)
        text = await call("createMcpServer", serverName="demo", serverCode="x")
        assert "Registration failed" in text
        assert (servers_dir / "demo.js").read_text() == "x"


class TestUpdate:
    @pytest.mark.asyncio
    async def test_full(self, sample_server: Path) -> None:
        text = await call("updateMcpServer", serverName="demo", updateType="full", code="a\nb")
        assert sample_server.read_text() == "a\nb"
        assert "Total lines: 2" in text

    @pytest.mark.asyncio
    async def test_section(self, sample_server: Path) -> None:
        text = await call(
            "updateMcpServer",
            serverName="demo",
            updateType="section",
            code="// replaced",
            startLine=3,
            endLine=3,
            description="mark the gap",
        )
        assert sample_server.read_text().split("\n")[2] == "// replaced"
        assert "Update details" in text
        assert "Description: mark the gap" in text

    @pytest.mark.asyncio
    async def test_add(self, sample_server: Path) -> None:
        text = await call("updateMcpServer", serverName="demo", updateType="add", code="// top", insertAfterLine=0)
        assert sample_server.read_text().startswith("// top\nimport")
        assert "Addition details" in text
        assert "Total lines: 7" in text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "extra",
        [
            {"updateType": "section", "startLine": 4, "endLine": 2},
            {"updateType": "section", "startLine": 1, "endLine": 99},
            {"updateType": "section", "startLine": 1},
            {"updateType": "add", "insertAfterLine": 7},
            {"updateType": "add"},
            {"updateType": "rewrite"},
        ],
    )
    async def test_rejections_leave_file(self, sample_server: Path, extra: dict) -> None:
        with pytest.raises(ValidationError):
            await call("updateMcpServer", serverName="demo", code="x", **extra)
        assert sample_server.read_text() == SAMPLE_SERVER

    @pytest.mark.asyncio
    async def test_missing_server(self, servers_dir: Path) -> None:
        with pytest.raises(ValidationError, match="not found"):
            await call("updateMcpServer", serverName="ghost", updateType="full", code="x")
        assert not (servers_dir / "ghost.js").exists()


class TestContentAndConfig:
    @pytest.mark.asyncio
    async def test_get_content(self, sample_server: Path) -> None:
        text = await call("getServerContent", serverName="demo.js")
        assert "Total lines: 6" in text
        assert "   6| export default server;" in text

    @pytest.mark.asyncio
    async def test_config_not_found(self, claude_config: Path) -> None:
        assert "not found" in await call("getClaudeConfig")

    @pytest.mark.asyncio
    async def test_config_roundtrip(self, claude_config: Path) -> None:
        document = {"mcpServers": {"a": {"command": "node", "args": ["/a.js"]}}}
        text = await call("updateClaudeConfig", configData=json.dumps(document))
        assert "1 server(s)" in text
        assert json.loads(await call("getClaudeConfig")) == document

    @pytest.mark.asyncio
    async def test_invalid_config_not_written(self, claude_config: Path) -> None:
        with pytest.raises(ValidationError):
            await call("updateClaudeConfig", configData='{"mcpServers": {"a": {}}}')
        assert not claude_config.exists()


class TestDependencies:
    @pytest.mark.asyncio
    async def test_analyze(self, sample_server: Path) -> None:
        text = await call("analyzeServerDependencies", serverName="demo")
        assert 'Server "demo" depends on these packages: zod' in text

    @pytest.mark.asyncio
    async def test_analyze_none(self, servers_dir: Path) -> None:
        servers_dir.mkdir(parents=True)
        (servers_dir / "plain.js").write_text('import fs from "fs";\n')
        assert "does not have external dependencies" in await call("analyzeServerDependencies", serverName="plain")

    @pytest.mark.asyncio
    async def test_install_uses_project_dir(self, servers_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        seen: list[tuple[list[str], Path | None]] = []

        async def fake_run(cmd: list[str], cwd: Path | None = None, timeout: float | None = None) -> CommandResult:
            seen.append((cmd, cwd))
            return CommandResult(command=cmd, returncode=0)

        monkeypatch.setattr(dependencies, "run_command", fake_run)
        text = await call("installServerDependencies", dependencies=["zod"], installTypes=False)
        assert "Installed with npm: zod" in text
        assert seen == [(["npm", "install", "--save", "zod"], servers_dir.parent)]
        assert (servers_dir.parent / "package.json").exists()

    @pytest.mark.asyncio
    async def test_install_rejects_non_list(self, servers_dir: Path) -> None:
        with pytest.raises(ValidationError):
            await call("installServerDependencies", dependencies="zod")


class TestRunDirectly:
    @pytest.mark.asyncio
    async def test_clean_run(self, sample_server: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake(path: Path, timeout_ms: int) -> CommandResult:
            assert timeout_ms == 500
            return CommandResult(command=["node", str(path)], returncode=None, stdout="ready", timed_out=True)

        monkeypatch.setattr(runner, "run_server_directly", fake)
        text = await call("runServerDirectly", serverName="demo", timeout=500)
        assert "was stopped" in text
        assert "ready" in text
        assert "No errors detected." in text

    @pytest.mark.asyncio
    async def test_stderr_is_error(self, sample_server: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake(path: Path, timeout_ms: int) -> CommandResult:
            return CommandResult(
                command=["node", str(path)],
                returncode=None,
                stderr="Error [ERR_MODULE_NOT_FOUND]: Cannot find package 'zod'",
                timed_out=True,
            )

        monkeypatch.setattr(runner, "run_server_directly", fake)
        with pytest.raises(ExternalServiceError) as excinfo:
            await call("runServerDirectly", serverName="demo")
        assert "ERR_MODULE_NOT_FOUND" in excinfo.value.message
        assert "installServerDependencies" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_timeout_bounds(self, sample_server: Path) -> None:
        with pytest.raises(ValidationError):
            await call("runServerDirectly", serverName="demo", timeout=10)


class TestDocsAndPrompts:
    @pytest.mark.asyncio
    async def test_sdk_info(self, mock_http) -> None:
        requests = mock_http(lambda request: httpx.Response(200, text="# MCP TypeScript SDK"))
        assert await call("getSdkInfo") == "# MCP TypeScript SDK"
        assert requests[0].url.host == "raw.githubusercontent.com"

    @pytest.mark.asyncio
    async def test_sdk_info_failure(self, mock_http) -> None:
        mock_http(lambda request: httpx.Response(503))
        with pytest.raises(ExternalServiceError, match=SDK_REPO_URL):
            await call("getSdkInfo")

    @pytest.mark.asyncio
    async def test_docs_resource(self, mock_http) -> None:
        mock_http(lambda request: httpx.Response(200, text="readme"))
        text, mime = await read_route(RESOURCES, "mcp-docs://typescript-sdk")
        assert (text, mime) == ("readme", "text/markdown")

    def test_system_prompt(self) -> None:
        result = render_prompt(PROMPTS, "system prompt", None)
        assert "createMcpServer" in result.messages[0].content.text

    @pytest.mark.asyncio
    async def test_help_and_template(self) -> None:
        assert "runServerDirectly" in await call("getHelp")
        assert "McpServer" in await call("getTemplate")

    def test_module_exports_handlers(self) -> None:
        assert creator_server.HANDLERS is HANDLERS
