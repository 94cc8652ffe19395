"""GatewayServerState: server lifecycle, status projections, Starlette app."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from dataclasses import dataclass, field

import uvicorn
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route

from mcp_gateway.config import GatewayConfig
from mcp_gateway.exceptions import AlreadyRunningError, BindError, NotRunningError
from mcp_gateway.health import health_routes
from mcp_gateway.manager import BackendInfo, GatewayBackendManager
from mcp_gateway.mcp_endpoint import MCP_PATH, MCPASGIApp, create_session_manager
from mcp_gateway.protocol import GatewayProtocolHandler, create_mcp_server
from mcp_gateway.rest import rest_routes

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"

# Seconds uvicorn waits for open connections (e.g. SSE streams) after stop()
_GRACEFUL_SHUTDOWN_TIMEOUT = 5


@dataclass
class GatewayStatus:
    """Read-only status snapshot. Not persisted."""

    is_running: bool
    port: int
    url: str
    mcp_endpoint: str
    backends: list[BackendInfo] = field(default_factory=list)
    total_tools: int = 0

    def to_dict(self) -> dict:
        return {
            "is_running": self.is_running,
            "port": self.port,
            "url": self.url,
            "mcp_endpoint": self.mcp_endpoint,
            "backends": [info.to_dict() for info in self.backends],
            "total_tools": self.total_tools,
        }


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the host process.

    Shutdown is requested through ``should_exit`` by ``GatewayServerState.stop()``.
    """

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class GatewayServerState:
    """Owns one gateway instance: config, backend manager and serving task.

    ``start()`` connects backends, binds the loopback listener and spawns
    the HTTP serving loop as a background task. ``stop()`` only signals
    that task; it drains the listener, shuts the backends down and then
    clears the running flag.
    """

    def __init__(
        self,
        store,
        config: GatewayConfig | None = None,
        *,
        manager: GatewayBackendManager | None = None,
    ):
        self.store = store
        self._config = config or GatewayConfig()
        self.manager = manager or GatewayBackendManager(store)
        self._running = False
        self._starting = False
        self._bound_port: int | None = None
        self._server: _EmbeddedServer | None = None
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        """Port being served, or the configured port when stopped."""
        if self._bound_port is not None:
            return self._bound_port
        return self._config.port

    @property
    def url(self) -> str:
        return f"http://{LOOPBACK_HOST}:{self.port}"

    @property
    def mcp_endpoint(self) -> str:
        return f"{self.url}{MCP_PATH}"

    def get_status_sync(self) -> GatewayStatus:
        """Status without backend details; does not take the manager lock."""
        return GatewayStatus(
            is_running=self.is_running,
            port=self.port,
            url=self.url,
            mcp_endpoint=self.mcp_endpoint,
        )

    async def get_status(self) -> GatewayStatus:
        """Full status including per-backend info, read under the manager lock."""
        backends, total_tools = await self.manager.snapshot()
        return GatewayStatus(
            is_running=self.is_running,
            port=self.port,
            url=self.url,
            mcp_endpoint=self.mcp_endpoint,
            backends=backends,
            total_tools=total_tools,
        )

    def get_connection_config(self) -> dict:
        """Snippet for a downstream MCP client's own configuration."""
        return {
            "mcp-gateway": {
                "type": "sse",
                "url": self.mcp_endpoint,
            }
        }

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config(self) -> GatewayConfig:
        return GatewayConfig(**self._config.to_dict())

    def update_config(self, new_config: GatewayConfig) -> None:
        """Replace the whole config. A running server keeps its current port."""
        self._config = GatewayConfig(**new_config.to_dict())
        logger.info(
            "Gateway config updated: enabled=%s port=%d auto_start=%s",
            new_config.enabled,
            new_config.port,
            new_config.auto_start,
        )

    def should_auto_start(self) -> bool:
        return self._config.enabled and self._config.auto_start

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> GatewayStatus:
        """Connect backends, bind the listener and start serving.

        Raises:
            AlreadyRunningError: If the server is running or starting.
            ConfigError: If the backend records cannot be read.
            BindError: If the loopback port cannot be bound.
        """
        if self._running or self._starting:
            raise AlreadyRunningError("Gateway server is already running")

        self._starting = True
        try:
            port = self._config.port
            await self.manager.load_and_connect()

            try:
                sock = self._bind(port)
            except OSError as exc:
                await self.manager.shutdown()
                raise BindError(f"Failed to bind to port {port}: {exc}") from exc
            self._bound_port = sock.getsockname()[1]
            logger.info("Starting MCP Gateway on %s:%d", LOOPBACK_HOST, self._bound_port)

            handler = GatewayProtocolHandler(self.manager)
            app = self.create_app(handler)
            self._server = _EmbeddedServer(
                uvicorn.Config(
                    app,
                    lifespan="on",
                    log_config=None,
                    access_log=False,
                    timeout_graceful_shutdown=_GRACEFUL_SHUTDOWN_TIMEOUT,
                )
            )
            self._running = True
            self._task = asyncio.create_task(
                self._serve(self._server, sock), name="mcp-gateway-server"
            )
        finally:
            self._starting = False

        status = await self.get_status()
        logger.info(
            "MCP Gateway started successfully on port %d with %d backends and %d tools",
            status.port,
            len(status.backends),
            status.total_tools,
        )
        return status

    @staticmethod
    def _bind(port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((LOOPBACK_HOST, port))
            sock.listen(128)
        except OSError:
            sock.close()
            raise
        sock.setblocking(False)
        return sock

    async def _serve(self, server: _EmbeddedServer, sock: socket.socket) -> None:
        try:
            await server.serve(sockets=[sock])
        except Exception as exc:
            logger.error("Gateway server error: %s: %s", type(exc).__name__, exc)
        finally:
            sock.close()
            await self.manager.shutdown()
            self._server = None
            self._bound_port = None
            self._running = False
            logger.info("MCP Gateway stopped")

    def stop(self) -> None:
        """Signal the serving task to shut down and return without waiting.

        Raises:
            NotRunningError: If the server is not running.
        """
        if not self._running or self._server is None:
            raise NotRunningError("Gateway server is not running")
        if not self._server.should_exit:
            self._server.should_exit = True
            logger.info("Gateway shutdown signal sent")

    async def wait_stopped(self) -> None:
        """Wait for the serving task (listener and backends) to finish."""
        task = self._task
        if task is None:
            return
        await task
        self._task = None

    async def restart_backend(self, backend_id: int) -> BackendInfo:
        return await self.manager.restart_backend(backend_id)

    # ------------------------------------------------------------------
    # HTTP app
    # ------------------------------------------------------------------

    def create_app(self, handler: GatewayProtocolHandler) -> Starlette:
        """Build the Starlette app: health, management REST and the MCP endpoint.

        The MCP session manager runs for the lifetime of the app via lifespan.
        """
        mcp_server = create_mcp_server(handler)
        session_manager = create_session_manager(mcp_server)

        @contextlib.asynccontextmanager
        async def lifespan(app):
            async with session_manager.run():
                yield

        routes = []
        routes.extend(health_routes())
        routes.extend(rest_routes())
        # Route, not Mount: Mount("/mcp") redirects the exact path with a 307
        routes.append(Route(MCP_PATH, endpoint=MCPASGIApp(session_manager)))

        app = Starlette(routes=routes, lifespan=lifespan)
        app.state.gateway = self

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["mcp-session-id"],
        )
        return app
