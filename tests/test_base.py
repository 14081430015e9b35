"""Tests for the shared server scaffolding."""

from __future__ import annotations

import logging

import httpx
import pytest
from mcp.types import Resource, ResourceTemplate

from mcp_adapters.base import (
    PromptRoute,
    ResourceRoute,
    build_server,
    dispatch,
    fetch_json,
    image_content,
    int_arg,
    json_response,
    read_route,
    render_prompt,
    require_args,
    require_env,
    text_response,
)
from mcp_adapters.errors import AdapterError, ConfigurationError, ExternalServiceError, ValidationError


class TestResponses:
    def test_text_response(self) -> None:
        [block] = text_response("hi")
        assert (block.type, block.text) == ("text", "hi")

    def test_json_response(self) -> None:
        [block] = json_response({"a": 1})
        assert block.text == '{\n  "a": 1\n}'

    def test_image_content(self) -> None:
        image = image_content(b"\x89PNG")
        assert image.mimeType == "image/png"
        assert image.data == "iVBORw=="


class TestArguments:
    def test_require_args(self) -> None:
        require_args({"a": 1, "b": "x"}, "a", "b")
        with pytest.raises(ValidationError, match="b, c"):
            require_args({"a": 1, "b": ""}, "a", "b", "c")

    def test_require_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MCP_TEST_SET", "v")
        monkeypatch.delenv("MCP_TEST_UNSET", raising=False)
        assert require_env("MCP_TEST_SET") == {"MCP_TEST_SET": "v"}
        with pytest.raises(ConfigurationError, match="MCP_TEST_UNSET"):
            require_env("MCP_TEST_SET", "MCP_TEST_UNSET")

    def test_int_arg(self) -> None:
        assert int_arg({}, "n", 3, 1, 5) == 3
        assert int_arg({"n": "4"}, "n", 3, 1, 5) == 4
        with pytest.raises(ValidationError):
            int_arg({"n": 9}, "n", 3, 1, 5)
        with pytest.raises(ValidationError):
            int_arg({"n": "many"}, "n", 3, 1, 5)


class TestResourceRoute:
    def test_fixed_uri(self) -> None:
        route = ResourceRoute("gitlab://projects", "projects", lambda p: "")
        assert not route.is_template
        assert route.match("gitlab://projects") == {}
        assert route.match("gitlab://projects/1") is None
        assert isinstance(route.to_mcp(), Resource)

    def test_template_params(self) -> None:
        route = ResourceRoute("gitlab://projects/{projectId}/merge_requests/{iid}", "mr", lambda p: "")
        assert route.is_template
        assert isinstance(route.to_mcp(), ResourceTemplate)
        assert route.match("gitlab://projects/group%2Fapp/merge_requests/7") == {
            "projectId": "group/app",
            "iid": "7",
        }

    def test_param_does_not_span_segments(self) -> None:
        route = ResourceRoute("excel://{fileName}/info", "info", lambda p: "")
        assert route.match("excel://a/b/info") is None

    @pytest.mark.asyncio
    async def test_read_route(self) -> None:
        async def read(params: dict[str, str]) -> str:
            return f"tasks of {params['key']}"

        routes = [ResourceRoute("jira://projects/{key}/tasks", "tasks", read, mime_type="text/plain")]
        assert await read_route(routes, "jira://projects/OPS/tasks") == ("tasks of OPS", "text/plain")

    @pytest.mark.asyncio
    async def test_read_route_error_as_text(self) -> None:
        def fail(params: dict[str, str]) -> str:
            raise ValidationError("no such project")

        routes = [ResourceRoute("x://{id}", "x", fail)]
        text, mime = await read_route(routes, "x://1")
        assert text == "Error reading x://1: no such project"
        assert mime == "text/plain"

    @pytest.mark.asyncio
    async def test_unknown_resource(self) -> None:
        with pytest.raises(ValidationError):
            await read_route([], "x://nothing")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self) -> None:
        async def later(args: dict) -> list:
            return text_response("async")

        handlers = {"now": lambda args: text_response("sync"), "later": later}
        assert (await dispatch(handlers, "now", None))[0].text == "sync"
        assert (await dispatch(handlers, "later", {}))[0].text == "async"

    @pytest.mark.asyncio
    async def test_unknown_tool(self) -> None:
        with pytest.raises(ValidationError, match="Unknown tool"):
            await dispatch({}, "nope", {})

    @pytest.mark.asyncio
    async def test_adapter_error_passes_through(self) -> None:
        def fail(args: dict) -> list:
            raise ConfigurationError("missing key")

        with pytest.raises(ConfigurationError, match="missing key"):
            await dispatch({"t": fail}, "t", {})

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self, caplog: pytest.LogCaptureFixture) -> None:
        def fail(args: dict) -> list:
            raise KeyError("boom")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(AdapterError, match="Error in t") as excinfo:
                await dispatch({"t": fail}, "t", {})
        assert isinstance(excinfo.value.cause, KeyError)
        assert "Tool t failed" in caplog.text


class TestPrompts:
    PROMPTS = [
        PromptRoute("greet", "Say hello", lambda a: f"Hello {a['who']}", [("who", "Name", True)]),
    ]

    def test_render(self) -> None:
        result = render_prompt(self.PROMPTS, "greet", {"who": "team"})
        assert result.messages[0].content.text == "Hello team"
        assert result.messages[0].role == "user"

    def test_missing_argument(self) -> None:
        with pytest.raises(ValidationError, match="who"):
            render_prompt(self.PROMPTS, "greet", {})

    def test_unknown_prompt(self) -> None:
        with pytest.raises(ValidationError):
            render_prompt(self.PROMPTS, "other", {})

    def test_to_mcp(self) -> None:
        prompt = self.PROMPTS[0].to_mcp()
        assert prompt.arguments[0].name == "who"
        assert prompt.arguments[0].required is True


class TestFetchJson:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        transport = httpx.MockTransport(lambda r: httpx.Response(200, json={"ok": True}))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await fetch_json(client, "GET", "https://api.test/x") == {"ok": True}

    @pytest.mark.asyncio
    async def test_empty_body(self) -> None:
        transport = httpx.MockTransport(lambda r: httpx.Response(204))
        async with httpx.AsyncClient(transport=transport) as client:
            assert await fetch_json(client, "POST", "https://api.test/x") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body,expected",
        [
            ({"message": "city not found"}, "city not found"),
            ({"errorMessages": ["Issue does not exist"]}, "Issue does not exist"),
            ({"status": {"error_message": "Invalid value for symbol"}}, "Invalid value for symbol"),
        ],
    )
    async def test_error_detail(self, body: dict, expected: str) -> None:
        transport = httpx.MockTransport(lambda r: httpx.Response(404, json=body))
        async with httpx.AsyncClient(transport=transport) as client:
            with pytest.raises(ExternalServiceError) as excinfo:
                await fetch_json(client, "GET", "https://api.test/x")
        assert excinfo.value.message == f"HTTP 404: {expected}"

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(ExternalServiceError, match="Request failed"):
                await fetch_json(client, "GET", "https://api.test/x")


class TestBuildServer:
    def test_build_with_everything(self) -> None:
        server = build_server(
            "t",
            [],
            {},
            [ResourceRoute("x://a", "a", lambda p: "")],
            [PromptRoute("p", "d", lambda a: "")],
        )
        assert server.name == "t"
