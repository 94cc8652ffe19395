"""MCP-facing surface of the gateway: three meta-tools instead of the raw catalog.

Publishing every namespaced tool from every backend can put hundreds of
tools in front of the calling model. The handler instead exposes a
discover -> load -> call flow:

    list_available_mcps                          configured backends and status
    load_mcp_tools(mcp_name)                     one backend's catalog
    call_mcp_tool(mcp_name, tool_name, args)     one call, routed to that backend
"""

from __future__ import annotations

import json
import logging
from typing import Any

from mcp.server.lowlevel.server import Server
from mcp.shared.exceptions import McpError
from mcp.types import (
    INVALID_PARAMS,
    CallToolRequest,
    CallToolResult,
    EmbeddedResource,
    ErrorData,
    ImageContent,
    ServerResult,
    TextContent,
    Tool,
)

from mcp_gateway.exceptions import (
    BackendConnectError,
    ConfigError,
    NotConnectedError,
    UnknownBackendError,
    UnknownToolError,
)
from mcp_gateway.instructions import GATEWAY as _GATEWAY_INSTRUCTIONS

logger = logging.getLogger(__name__)

LIST_AVAILABLE_MCPS = "list_available_mcps"
LOAD_MCP_TOOLS = "load_mcp_tools"
CALL_MCP_TOOL = "call_mcp_tool"

META_TOOL_NAMES = (LIST_AVAILABLE_MCPS, LOAD_MCP_TOOLS, CALL_MCP_TOOL)

META_TOOLS: tuple[Tool, ...] = (
    Tool(
        name=LIST_AVAILABLE_MCPS,
        description=(
            "List every MCP server behind this gateway with its connection status, "
            "tool count and failure reason if any. Start here."
        ),
        inputSchema={"type": "object", "properties": {}},
    ),
    Tool(
        name=LOAD_MCP_TOOLS,
        description=(
            "Load the tools of one MCP server (names, descriptions, input schemas). "
            "Connects the server if it is not connected yet."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "mcp_name": {
                    "type": "string",
                    "description": "MCP name as shown by list_available_mcps",
                },
            },
            "required": ["mcp_name"],
        },
    ),
    Tool(
        name=CALL_MCP_TOOL,
        description=(
            "Call a tool on one MCP server. Use a tool name returned by load_mcp_tools."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "mcp_name": {"type": "string", "description": "MCP that owns the tool"},
                "tool_name": {"type": "string", "description": "Tool name within that MCP"},
                "arguments": {
                    "type": "object",
                    "description": "Arguments matching the tool's input schema",
                },
            },
            "required": ["mcp_name", "tool_name"],
        },
    ),
)


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=message)], isError=True)


def _json_result(payload: dict) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(payload, indent=2))],
        isError=False,
    )


def _invalid_params(message: str) -> McpError:
    return McpError(ErrorData(code=INVALID_PARAMS, message=message))


def _require_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise _invalid_params(f"Missing required string parameter: {key}")
    return value


def convert_content(item: Any) -> TextContent | ImageContent | EmbeddedResource:
    """Map one backend content block onto the gateway's outward content type."""
    if isinstance(item, TextContent):
        return TextContent(type="text", text=item.text)
    if isinstance(item, ImageContent):
        return ImageContent(type="image", data=item.data, mimeType=item.mimeType)
    if isinstance(item, EmbeddedResource):
        return EmbeddedResource(type="resource", resource=item.resource)
    if hasattr(item, "model_dump"):
        return TextContent(type="text", text=json.dumps(item.model_dump(mode="json")))
    return TextContent(type="text", text=str(item))


class GatewayProtocolHandler:
    """Implements the meta-tools against a shared ``GatewayBackendManager``."""

    def __init__(self, manager):
        self.manager = manager

    def list_tools(self) -> list[Tool]:
        return list(META_TOOLS)

    async def dispatch(self, name: str, arguments: dict[str, Any] | None) -> CallToolResult:
        """Run one meta-tool.

        Raises:
            McpError: ``INVALID_PARAMS`` for malformed arguments, before any
                backend is touched.
        """
        arguments = arguments or {}
        logger.info("Meta-tool call: %s", name, extra={"meta_tool": name})

        if name == LIST_AVAILABLE_MCPS:
            return await self.list_available_mcps()

        if name == LOAD_MCP_TOOLS:
            return await self.load_mcp_tools(_require_str(arguments, "mcp_name"))

        if name == CALL_MCP_TOOL:
            mcp_name = _require_str(arguments, "mcp_name")
            tool_name = _require_str(arguments, "tool_name")
            tool_args = arguments.get("arguments")
            if tool_args is None:
                tool_args = {}
            if not isinstance(tool_args, dict):
                raise _invalid_params("Parameter 'arguments' must be an object")
            return await self.call_mcp_tool(mcp_name, tool_name, tool_args)

        return _error_result(
            f"Unknown tool: {name}. Available tools: {', '.join(META_TOOL_NAMES)}"
        )

    async def list_available_mcps(self) -> CallToolResult:
        infos, total_tools = await self.manager.list_configured()
        mcps = [
            {
                "name": info.name,
                "type": info.type,
                "status": info.status.value,
                "tool_count": info.tool_count,
                "server_info": info.server_info,
                "error_message": info.error_message,
            }
            for info in infos
        ]
        return _json_result({"mcps": mcps, "count": len(mcps), "total_tools": total_tools})

    async def load_mcp_tools(self, mcp_name: str) -> CallToolResult:
        try:
            tools = await self.manager.ensure_connected(mcp_name)
        except UnknownBackendError:
            return _error_result(
                f"Unknown MCP: {mcp_name}. Use {LIST_AVAILABLE_MCPS} to see configured MCPs."
            )
        except (BackendConnectError, ConfigError) as exc:
            logger.warning(
                "load_mcp_tools could not connect %s: %s",
                mcp_name,
                exc,
                extra={"backend": mcp_name},
            )
            return _error_result(f"Failed to connect to MCP {mcp_name}: {exc}")

        return _json_result(
            {
                "mcp_name": mcp_name,
                "tools": [
                    {
                        "name": tool.name,
                        "description": tool.description or "",
                        "input_schema": tool.inputSchema,
                    }
                    for tool in tools
                ],
                "count": len(tools),
            }
        )

    async def call_mcp_tool(
        self, mcp_name: str, tool_name: str, arguments: dict[str, Any]
    ) -> CallToolResult:
        try:
            result = await self.manager.call_backend_tool(mcp_name, tool_name, arguments)
        except (UnknownBackendError, UnknownToolError, NotConnectedError) as exc:
            logger.warning(
                "call_mcp_tool routing failed for %s/%s: %s",
                mcp_name,
                tool_name,
                exc,
                extra={"backend": mcp_name, "tool": tool_name},
            )
            return _error_result(f"Error: {exc}")
        except BackendConnectError as exc:
            return _error_result(f"Error: backend failure for {mcp_name}: {exc}")
        except Exception as exc:
            logger.error(
                "call_mcp_tool unexpected error for %s/%s: %s: %s",
                mcp_name,
                tool_name,
                type(exc).__name__,
                exc,
            )
            return _error_result(f"Error: unexpected failure calling {tool_name} on {mcp_name}")

        content = [convert_content(item) for item in result.content]
        return CallToolResult(content=content, isError=bool(result.isError))


def create_mcp_server(handler: GatewayProtocolHandler) -> Server:
    """Build a low-level MCP ``Server`` serving *handler*'s meta-tools."""
    server = Server("mcp-gateway", instructions=_GATEWAY_INSTRUCTIONS)

    @server.list_tools()
    async def _list_tools() -> list[Tool]:
        return handler.list_tools()

    # Registered directly so McpError reaches the client as a JSON-RPC
    # error instead of being folded into an isError tool result.
    async def _call_tool(req: CallToolRequest) -> ServerResult:
        result = await handler.dispatch(req.params.name, req.params.arguments)
        return ServerResult(result)

    server.request_handlers[CallToolRequest] = _call_tool
    return server
