"""REST API routes for /api/v1/."""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mcp_gateway.exceptions import ConfigError, NotFoundError

logger = logging.getLogger(__name__)


async def get_status(request: Request) -> JSONResponse:
    """GET /api/v1/status: full gateway status with per-backend info."""
    gateway = request.app.state.gateway
    status = await gateway.get_status()
    return JSONResponse(status.to_dict())


async def list_backends(request: Request) -> JSONResponse:
    """GET /api/v1/backends: list all backends with status."""
    gateway = request.app.state.gateway
    infos, _ = await gateway.manager.snapshot()
    backends = [info.to_dict() for info in infos]
    return JSONResponse({"backends": backends, "count": len(backends)})


async def restart_backend(request: Request) -> JSONResponse:
    """POST /api/v1/backends/{backend_id}/restart: reconnect one backend.

    Returns the refreshed backend info. A failed reconnect is still a 200;
    the info carries ``status: "failed"`` and the reason.
    """
    gateway = request.app.state.gateway
    raw_id = request.path_params["backend_id"]
    try:
        backend_id = int(raw_id)
    except ValueError:
        return JSONResponse({"error": f"Invalid backend id: {raw_id}"}, status_code=400)

    try:
        info = await gateway.restart_backend(backend_id)
    except NotFoundError as exc:
        return JSONResponse({"error": str(exc)}, status_code=404)
    except ConfigError as exc:
        logger.error("Restart of backend %d failed: %s", backend_id, exc)
        return JSONResponse({"error": str(exc)}, status_code=500)
    except Exception as exc:
        logger.error(
            "Restart of backend %d failed: %s: %s",
            backend_id,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        return JSONResponse(
            {"error": "Restart failed", "error_type": type(exc).__name__},
            status_code=500,
        )

    return JSONResponse(info.to_dict())


async def list_tools(request: Request) -> JSONResponse:
    """GET /api/v1/tools: list all aggregated tools under namespaced names.

    Query params:
        backend: filter tools by backend name
    """
    manager = request.app.state.gateway.manager
    backend_filter = request.query_params.get("backend")

    async with manager.lock:
        all_tools = manager.get_tools()
        owners = {
            t.name: manager.get_tool_mapping(t.name).backend_name for t in all_tools
        }

    tools = []
    for t in sorted(all_tools, key=lambda x: x.name):
        backend_name = owners[t.name]
        if backend_filter and backend_name != backend_filter:
            continue
        tools.append(
            {
                "name": t.name,
                "backend": backend_name,
                "description": t.description or "",
                "input_schema": t.inputSchema,
            }
        )

    return JSONResponse({"tools": tools, "count": len(tools)})


async def connection_config(request: Request) -> JSONResponse:
    """GET /api/v1/connection-config: snippet for a client's MCP config."""
    gateway = request.app.state.gateway
    return JSONResponse(gateway.get_connection_config())


def rest_routes() -> list[Route]:
    """Return REST API v1 routes."""
    return [
        Route("/api/v1/status", get_status, methods=["GET"]),
        Route("/api/v1/backends", list_backends, methods=["GET"]),
        Route("/api/v1/backends/{backend_id}/restart", restart_backend, methods=["POST"]),
        Route("/api/v1/tools", list_tools, methods=["GET"]),
        Route("/api/v1/connection-config", connection_config, methods=["GET"]),
    ]
