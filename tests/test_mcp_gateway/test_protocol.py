"""Tests for the three meta-tools served over MCP."""

import json

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import (
    INVALID_PARAMS,
    CallToolRequest,
    CallToolRequestParams,
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    ListToolsRequest,
    TextContent,
    TextResourceContents,
)

from mcp_gateway.manager import GatewayBackendManager
from mcp_gateway.protocol import (
    CALL_MCP_TOOL,
    LIST_AVAILABLE_MCPS,
    LOAD_MCP_TOOLS,
    GatewayProtocolHandler,
    convert_content,
    create_mcp_server,
)
from .conftest import FakeFactory, add_member, make_tool


def _payload(result: CallToolResult) -> dict:
    assert not result.isError, result.content[0].text
    return json.loads(result.content[0].text)


@pytest.fixture
async def alpha_failed(store):
    """alpha fails at startup, beta connects with ping and echo."""
    add_member(store, "alpha")
    add_member(store, "beta")
    factory = FakeFactory(
        catalogs={
            "alpha": [make_tool("ping", "Ping alpha")],
            "beta": [make_tool("ping", "Ping beta"), make_tool("echo", "Echo")],
        },
        failures={"alpha": "command exited with status 127"},
    )
    manager = GatewayBackendManager(store, client_factory=factory)
    await manager.load_and_connect()
    return GatewayProtocolHandler(manager), factory


class TestListTools:
    def test_exactly_three_meta_tools(self, store):
        handler = GatewayProtocolHandler(GatewayBackendManager(store))
        names = [t.name for t in handler.list_tools()]
        assert names == [LIST_AVAILABLE_MCPS, LOAD_MCP_TOOLS, CALL_MCP_TOOL]

    def test_required_fields_declared(self, store):
        handler = GatewayProtocolHandler(GatewayBackendManager(store))
        by_name = {t.name: t for t in handler.list_tools()}
        assert by_name[LOAD_MCP_TOOLS].inputSchema["required"] == ["mcp_name"]
        assert by_name[CALL_MCP_TOOL].inputSchema["required"] == ["mcp_name", "tool_name"]


class TestListAvailableMcps:
    async def test_includes_failed_backends_with_reason(self, alpha_failed):
        handler, _ = alpha_failed

        data = _payload(await handler.dispatch(LIST_AVAILABLE_MCPS, {}))

        assert data["count"] == 2
        assert data["total_tools"] == 2
        mcps = {m["name"]: m for m in data["mcps"]}
        assert mcps["alpha"]["status"] == "failed"
        assert mcps["alpha"]["error_message"] == "command exited with status 127"
        assert mcps["beta"]["status"] == "connected"
        assert mcps["beta"]["tool_count"] == 2
        assert mcps["beta"]["error_message"] is None

    async def test_no_side_effects(self, alpha_failed):
        handler, factory = alpha_failed
        attempts = list(factory.attempts)

        await handler.dispatch(LIST_AVAILABLE_MCPS, None)

        assert factory.attempts == attempts

    async def test_lists_member_enabled_after_startup(self, store, alpha_failed):
        handler, factory = alpha_failed
        add_member(store, "gamma")
        factory.catalogs["gamma"] = [make_tool("stat")]

        data = _payload(await handler.dispatch(LIST_AVAILABLE_MCPS, {}))

        mcps = {m["name"]: m for m in data["mcps"]}
        assert data["count"] == 3
        assert mcps["gamma"]["status"] == "disconnected"
        assert mcps["gamma"]["tool_count"] == 0
        assert "gamma" not in factory.attempts

        loaded = _payload(await handler.dispatch(LOAD_MCP_TOOLS, {"mcp_name": "gamma"}))
        assert [t["name"] for t in loaded["tools"]] == ["stat"]


class TestLoadMcpTools:
    async def test_returns_original_names_undecorated(self, alpha_failed):
        handler, _ = alpha_failed

        data = _payload(await handler.dispatch(LOAD_MCP_TOOLS, {"mcp_name": "beta"}))

        assert data["mcp_name"] == "beta"
        assert data["count"] == 2
        tools = {t["name"]: t for t in data["tools"]}
        assert set(tools) == {"ping", "echo"}
        assert tools["ping"]["description"] == "Ping beta"
        assert tools["ping"]["input_schema"] == {"type": "object", "properties": {}}

    async def test_failed_backend_reconnects(self, alpha_failed):
        handler, factory = alpha_failed
        del factory.failures["alpha"]

        data = _payload(await handler.dispatch(LOAD_MCP_TOOLS, {"mcp_name": "alpha"}))

        assert [t["name"] for t in data["tools"]] == ["ping"]
        listed = _payload(await handler.dispatch(LIST_AVAILABLE_MCPS, {}))
        alpha = next(m for m in listed["mcps"] if m["name"] == "alpha")
        assert alpha["status"] == "connected"

    async def test_repeated_failure_is_tool_error(self, alpha_failed):
        handler, factory = alpha_failed

        result = await handler.dispatch(LOAD_MCP_TOOLS, {"mcp_name": "alpha"})

        assert result.isError
        assert "command exited with status 127" in result.content[0].text
        assert factory.attempts.count("alpha") == 2

    async def test_unknown_backend_is_tool_error(self, alpha_failed):
        handler, _ = alpha_failed

        result = await handler.dispatch(LOAD_MCP_TOOLS, {"mcp_name": "gamma"})

        assert result.isError
        assert "Unknown MCP: gamma" in result.content[0].text


class TestCallMcpTool:
    async def test_text_returned_verbatim(self, alpha_failed):
        handler, factory = alpha_failed
        raw = "pong\n  {\"latency_ms\": 3}\n"
        factory.latest("beta").responses["ping"] = raw

        result = await handler.dispatch(
            CALL_MCP_TOOL, {"mcp_name": "beta", "tool_name": "ping", "arguments": {}}
        )

        assert result.isError is False
        assert len(result.content) == 1
        assert result.content[0].text == raw

    async def test_arguments_default_to_empty(self, alpha_failed):
        handler, factory = alpha_failed

        await handler.dispatch(CALL_MCP_TOOL, {"mcp_name": "beta", "tool_name": "echo"})

        assert factory.latest("beta").calls == [{"name": "echo", "arguments": {}}]

    async def test_backend_error_flag_preserved(self, alpha_failed):
        handler, factory = alpha_failed
        factory.latest("beta").responses["ping"] = CallToolResult(
            content=[TextContent(type="text", text="bad input")], isError=True
        )

        result = await handler.dispatch(
            CALL_MCP_TOOL, {"mcp_name": "beta", "tool_name": "ping", "arguments": {}}
        )

        assert result.isError is True
        assert result.content[0].text == "bad input"

    async def test_unknown_backend(self, alpha_failed):
        handler, _ = alpha_failed

        result = await handler.dispatch(
            CALL_MCP_TOOL, {"mcp_name": "gamma", "tool_name": "ping", "arguments": {}}
        )

        assert result.isError
        assert result.content[0].text.startswith("Error: Unknown MCP: gamma")

    async def test_unknown_tool(self, alpha_failed):
        handler, _ = alpha_failed

        result = await handler.dispatch(
            CALL_MCP_TOOL, {"mcp_name": "beta", "tool_name": "nope", "arguments": {}}
        )

        assert result.isError
        assert "nope" in result.content[0].text

    async def test_not_connected_does_not_connect(self, alpha_failed):
        handler, factory = alpha_failed
        del factory.failures["alpha"]

        result = await handler.dispatch(
            CALL_MCP_TOOL, {"mcp_name": "alpha", "tool_name": "ping", "arguments": {}}
        )

        assert result.isError
        assert "not connected" in result.content[0].text
        assert factory.attempts.count("alpha") == 1


class TestInvalidParams:
    @pytest.mark.parametrize(
        "name, arguments",
        [
            (LOAD_MCP_TOOLS, {}),
            (LOAD_MCP_TOOLS, {"mcp_name": 5}),
            (CALL_MCP_TOOL, {"mcp_name": "beta"}),
            (CALL_MCP_TOOL, {"tool_name": "ping"}),
            (CALL_MCP_TOOL, {"mcp_name": "beta", "tool_name": "ping", "arguments": [1]}),
        ],
    )
    async def test_rejected_before_backend_contact(self, alpha_failed, name, arguments):
        handler, factory = alpha_failed
        attempts = list(factory.attempts)

        with pytest.raises(McpError) as exc_info:
            await handler.dispatch(name, arguments)

        assert exc_info.value.error.code == INVALID_PARAMS
        assert factory.attempts == attempts
        assert factory.latest("beta").calls == []

    async def test_unknown_meta_tool_lists_valid_names(self, alpha_failed):
        handler, _ = alpha_failed

        result = await handler.dispatch("beta__ping", {})

        assert result.isError
        text = result.content[0].text
        for name in (LIST_AVAILABLE_MCPS, LOAD_MCP_TOOLS, CALL_MCP_TOOL):
            assert name in text


class TestConvertContent:
    def test_image_kept(self):
        item = ImageContent(type="image", data="aGVsbG8=", mimeType="image/png")
        out = convert_content(item)
        assert isinstance(out, ImageContent)
        assert out.data == "aGVsbG8="
        assert out.mimeType == "image/png"

    def test_resource_kept(self):
        resource = TextResourceContents(uri="file:///tmp/a.txt", text="hello", mimeType="text/plain")
        out = convert_content(EmbeddedResource(type="resource", resource=resource))
        assert isinstance(out, EmbeddedResource)
        assert out.resource.text == "hello"


class TestCreateMCPServer:
    async def test_call_handler_returns_meta_tool_result(self, alpha_failed):
        handler, _ = alpha_failed
        server = create_mcp_server(handler)

        result = await server.request_handlers[CallToolRequest](
            CallToolRequest(
                method="tools/call",
                params=CallToolRequestParams(name=LIST_AVAILABLE_MCPS, arguments={}),
            )
        )

        data = json.loads(result.root.content[0].text)
        assert data["count"] == 2

    async def test_list_handler_advertises_meta_tools(self, alpha_failed):
        handler, _ = alpha_failed
        server = create_mcp_server(handler)

        result = await server.request_handlers[ListToolsRequest](
            ListToolsRequest(method="tools/list")
        )

        assert [t.name for t in result.root.tools] == [
            LIST_AVAILABLE_MCPS,
            LOAD_MCP_TOOLS,
            CALL_MCP_TOOL,
        ]
