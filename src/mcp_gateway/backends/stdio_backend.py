"""Stdio-based backend client: launches a subprocess and talks MCP over its stdin/stdout."""

import asyncio
import contextlib
import logging
import os

import anyio
from mcp.client.session import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, TextContent

from mcp_gateway.backends.base import BackendClient
from mcp_gateway.exceptions import BackendConnectError, NotConnectedError

logger = logging.getLogger(__name__)

# Timeouts (seconds) for backend operations
DEFAULT_START_TIMEOUT = 30.0
_TOOL_LIST_TIMEOUT = 30
_TOOL_CALL_TIMEOUT = 300
_STOP_TIMEOUT = 15

# Errors that mean the child process or its pipes are gone
_TRANSPORT_ERRORS = (
    ConnectionError,
    OSError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


class StdioBackendClient(BackendClient):
    """Client that owns a subprocess MCP server reached via stdio transport.

    The stdio transport and session are entered and exited inside one
    owner task, so the process can be released from whichever task calls
    ``stop()``. Other tasks only send requests through the live session.
    """

    def __init__(
        self,
        name: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        start_timeout: float = DEFAULT_START_TIMEOUT,
    ):
        super().__init__(name)
        self.command = command
        self.args = list(args or [])
        self.env = dict(env) if env else None
        self.start_timeout = start_timeout
        self._session: ClientSession | None = None
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None

    def _build_env(self) -> dict[str, str] | None:
        # Explicit env replaces inheritance; keep gateway-scoped vars flowing through.
        if self.env is None:
            return None
        env = dict(self.env)
        for key, val in os.environ.items():
            if key.startswith("MCP_GATEWAY_") and key not in env:
                env[key] = val
        return env

    async def start(self) -> None:
        if self._started:
            return

        server_params = StdioServerParameters(
            command=self.command,
            args=self.args,
            env=self._build_env(),
        )
        logger.info("Starting stdio MCP %s: %s %s", self.name, self.command, self.args)

        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(server_params, ready), name=f"mcp-backend:{self.name}"
        )
        try:
            await asyncio.wait_for(ready, timeout=self.start_timeout)
        except asyncio.TimeoutError as exc:
            await self._cancel_task()
            raise BackendConnectError(
                f"Timed out after {self.start_timeout:.0f}s waiting for {self.name} to initialize"
            ) from exc
        except BackendConnectError:
            await self._cancel_task()
            raise
        except Exception as exc:
            await self._cancel_task()
            raise BackendConnectError(f"{type(exc).__name__}: {exc}") from exc

        self._started = True
        logger.info("Backend %s started (stdio) with %d tools", self.name, len(self._tools))

    async def _run(self, server_params: StdioServerParameters, ready: asyncio.Future) -> None:
        try:
            async with stdio_client(server_params) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    init_result = await session.initialize()
                    listed = await asyncio.wait_for(
                        session.list_tools(), timeout=_TOOL_LIST_TIMEOUT
                    )
                    self._session = session
                    self._server_info = init_result.serverInfo
                    self._tools = list(listed.tools)
                    if not ready.done():
                        ready.set_result(None)
                    await self._stop_event.wait()
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
            else:
                logger.error(
                    "Backend %s connection closed with error: %s: %s",
                    self.name,
                    type(exc).__name__,
                    exc,
                )
        finally:
            self._session = None
            self._started = False
            if not ready.done():
                ready.set_exception(
                    BackendConnectError(f"Backend {self.name} exited before initialization")
                )

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Backend %s stop timed out after %ds", self.name, _STOP_TIMEOUT)
        except Exception as exc:
            logger.error("Backend %s error during stop: %s: %s", self.name, type(exc).__name__, exc)
        self._task = None
        self._session = None
        self._tools = []
        self._started = False
        logger.info("Backend %s stopped", self.name)

    async def call_tool(self, name: str, arguments: dict) -> CallToolResult:
        session = self._session
        if not self._started or session is None:
            raise NotConnectedError(f"Backend {self.name} is not started")

        try:
            return await asyncio.wait_for(
                session.call_tool(name, arguments), timeout=_TOOL_CALL_TIMEOUT
            )
        except asyncio.TimeoutError:
            logger.error("Tool call %s on backend %s timed out after %ds", name, self.name, _TOOL_CALL_TIMEOUT)
            return CallToolResult(
                content=[TextContent(type="text", text=f"Error: tool call {name} timed out after {_TOOL_CALL_TIMEOUT}s")],
                isError=True,
            )
        except McpError as exc:
            # JSON-RPC error from the backend itself, not a gateway fault
            return CallToolResult(
                content=[TextContent(type="text", text=f"Error: {exc.error.message}")],
                isError=True,
            )
        except _TRANSPORT_ERRORS as exc:
            raise BackendConnectError(
                f"Backend {self.name} connection lost: {type(exc).__name__}: {exc}"
            ) from exc
