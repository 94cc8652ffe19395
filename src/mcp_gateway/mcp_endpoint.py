"""Streamable HTTP MCP endpoint for the gateway.

``StreamableHTTPSessionManager`` provides ASGI request handling for the
low-level ``Server`` built in :mod:`mcp_gateway.protocol`; this module
wraps it in a thin request-size guard and mounts it at ``/mcp``.
"""

from __future__ import annotations

import logging
from typing import Any

from mcp.server.lowlevel.server import Server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"

# Maximum MCP request body size (10 MB)
_MAX_REQUEST_BYTES = 10 * 1024 * 1024


class MCPASGIApp:
    """ASGI app that checks the request size then delegates to the session manager.

    Starlette's ``BaseHTTPMiddleware`` buffers responses and breaks SSE
    streaming, so the check works on the raw scope instead.
    """

    def __init__(self, session_manager: StreamableHTTPSessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: dict, receive: Any, send: Any) -> None:
        content_length = _get_content_length(scope)
        if content_length is not None and content_length > _MAX_REQUEST_BYTES:
            logger.warning("MCP endpoint: rejected %d byte request body", content_length)
            resp = JSONResponse(
                {"error": f"Request body too large (max {_MAX_REQUEST_BYTES} bytes)"},
                status_code=413,
            )
            await resp(scope, receive, send)
            return

        await self.session_manager.handle_request(scope, receive, send)


def _get_content_length(scope: dict) -> int | None:
    """Extract Content-Length from raw ASGI scope headers. Returns None if absent or invalid."""
    headers: list[tuple[bytes, bytes]] = scope.get("headers", [])
    for name, value in headers:
        if name.lower() == b"content-length":
            try:
                return int(value.decode("latin-1"))
            except (ValueError, OverflowError, UnicodeDecodeError):
                return None
    return None


def create_session_manager(mcp_server: Server) -> StreamableHTTPSessionManager:
    """Create a ``StreamableHTTPSessionManager`` wrapping *mcp_server*.

    A session manager can only be run once, so build a new one per server start.
    """
    return StreamableHTTPSessionManager(
        app=mcp_server,
        stateless=False,
    )
