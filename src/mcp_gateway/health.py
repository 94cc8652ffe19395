"""Health check endpoint."""

import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from mcp_gateway.manager import BackendStatus

logger = logging.getLogger(__name__)


async def health_endpoint(request: Request) -> JSONResponse:
    """GET /health: returns gateway status and backend health.

    Response:
        {
            "status": "ok",
            "backends": {
                "filesystem": {"status": "connected", "type": "stdio", "tools": 5},
                ...
            },
            "tools_count": 42
        }
    """
    gateway = request.app.state.gateway
    infos, tools_count = await gateway.manager.snapshot()

    backend_health = {}
    for info in infos:
        entry = {"status": info.status.value, "type": info.type, "tools": info.tool_count}
        if info.error_message:
            entry["detail"] = info.error_message
        backend_health[info.name] = entry

    all_ok = all(info.status is BackendStatus.CONNECTED for info in infos)

    return JSONResponse({
        "status": "ok" if all_ok else "degraded",
        "backends": backend_health,
        "tools_count": tools_count,
    })


def health_routes() -> list[Route]:
    """Return the health check route."""
    return [Route("/health", health_endpoint, methods=["GET"])]
