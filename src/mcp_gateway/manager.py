"""Gateway backend manager: backend lifecycles, namespaced tool index, call routing.

All backend state (connections plus the tool index) sits behind one
coarse ``asyncio.Lock``. Every public coroutine holds it for its full
duration, so operations are serialized gateway-wide and a restart is
never observed half-done. Backends are connected one at a time at
startup; startup is infrequent, and sequential connects keep the log
and failure attribution straightforward.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from mcp.types import CallToolResult, Implementation, Tool

from mcp_gateway.backends import (
    UNSUPPORTED_TRANSPORT_MESSAGE,
    BackendClient,
    is_supported,
    spawn_client,
)
from mcp_gateway.backends.stdio_backend import DEFAULT_START_TIMEOUT
from mcp_gateway.exceptions import (
    BackendConnectError,
    ConfigError,
    NotConnectedError,
    NotFoundError,
    UnknownBackendError,
    UnknownToolError,
)
from mcp_gateway.store import BackendRecord

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")

ClientFactory = Callable[[BackendRecord, float], Awaitable[BackendClient]]


def namespace_tool(backend_name: str, tool_name: str) -> str:
    """Build the aggregated name for a backend tool.

    Every character of *backend_name* outside ``[A-Za-z0-9_-]`` becomes
    ``_``; the tool name is appended unmodified after ``__``.

    >>> namespace_tool("MCP with spaces", "tool")
    'MCP_with_spaces__tool'
    """
    return f"{_UNSAFE_NAME_CHARS.sub('_', backend_name)}__{tool_name}"


class BackendStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    RESTARTING = "restarting"


@dataclass
class BackendInfo:
    """Read-only status projection of one backend."""

    id: int
    name: str
    type: str
    status: BackendStatus
    tool_count: int
    server_info: dict | None
    error_message: str | None
    restart_count: int
    auto_restart: bool

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "status": self.status.value,
            "tool_count": self.tool_count,
            "server_info": self.server_info,
            "error_message": self.error_message,
            "restart_count": self.restart_count,
            "auto_restart": self.auto_restart,
        }


@dataclass
class ToolMapping:
    """Index entry: namespaced name -> owning backend and original tool."""

    backend_id: int
    backend_name: str
    original_name: str
    tool: Tool


class BackendConnection:
    """State for one backend: status, owned client, tool catalog, restart count."""

    def __init__(self, record: BackendRecord, restart_count: int = 0):
        self.record = record
        self.status = BackendStatus.DISCONNECTED
        self.error: str | None = None
        self.client: BackendClient | None = None
        self.tools: list[Tool] = []
        self.server_info: Implementation | None = None
        self.restart_count = restart_count

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def name(self) -> str:
        return self.record.name

    def mark_connected(
        self, client: BackendClient, server_info: Implementation | None, tools: list[Tool]
    ) -> None:
        self.client = client
        self.server_info = server_info
        self.tools = list(tools)
        self.status = BackendStatus.CONNECTED
        self.error = None

    def mark_failed(self, reason: str) -> None:
        self.status = BackendStatus.FAILED
        self.error = reason
        self.tools = []

    async def release(self) -> None:
        """Stop and drop the owned client, if any."""
        client, self.client = self.client, None
        if client is None:
            return
        try:
            await client.stop()
        except Exception as exc:
            logger.error(
                "Error closing backend %s: %s: %s", self.name, type(exc).__name__, exc
            )

    def to_info(self) -> BackendInfo:
        server_info = None
        if self.server_info is not None:
            server_info = {
                "name": self.server_info.name,
                "version": self.server_info.version,
            }
        return BackendInfo(
            id=self.id,
            name=self.name,
            type=self.record.transport_type,
            status=self.status,
            tool_count=len(self.tools),
            server_info=server_info,
            error_message=self.error if self.status is BackendStatus.FAILED else None,
            restart_count=self.restart_count,
            auto_restart=self.record.auto_restart,
        )


class GatewayBackendManager:
    """Owns all backend connections and the aggregated tool index."""

    def __init__(
        self,
        store,
        client_factory: ClientFactory = spawn_client,
        connect_timeout: float = DEFAULT_START_TIMEOUT,
    ):
        self.store = store
        self.backends: dict[int, BackendConnection] = {}
        self._tool_index: dict[str, ToolMapping] = {}
        self._client_factory = client_factory
        self.connect_timeout = connect_timeout
        self.lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load_and_connect(self) -> None:
        """Read enabled backends from the store and connect each one in turn.

        Raises:
            ConfigError: If the store cannot be read. Individual connect
                failures are recorded per backend and never raised.
        """
        async with self.lock:
            try:
                records = self.store.get_enabled_gateway_backends()
            except sqlite3.Error as exc:
                raise ConfigError(f"Failed to read gateway backends: {exc}") from exc

            logger.info("Loading %d enabled MCPs", len(records))

            for backend in self.backends.values():
                await backend.release()
            self.backends.clear()

            for record in records:
                if record.is_gateway_entry:
                    logger.info("Skipping the gateway's own library entry %r", record.name)
                    continue
                await self._add_backend(record)

            self.build_tool_index()
            connected = sum(
                1 for b in self.backends.values() if b.status is BackendStatus.CONNECTED
            )
            logger.info(
                "Loaded %d tools from %d backends (%d configured)",
                len(self._tool_index),
                connected,
                len(self.backends),
            )

    async def _add_backend(self, record: BackendRecord, restart_count: int = 0) -> BackendConnection:
        logger.info("Adding backend: %s (%s)", record.name, record.transport_type)
        backend = BackendConnection(record, restart_count=restart_count)
        self.backends[record.id] = backend
        await self._connect(backend)
        return backend

    async def _connect(
        self, backend: BackendConnection, status: BackendStatus = BackendStatus.CONNECTING
    ) -> bool:
        """Bring one backend up. Returns True if it ended CONNECTED."""
        if not is_supported(backend.record):
            logger.warning(
                "Skipping %s - only stdio MCPs are supported for gateway", backend.name
            )
            backend.mark_failed(UNSUPPORTED_TRANSPORT_MESSAGE)
            return False

        backend.status = status
        try:
            client, server_info, tools = await self.connect_stdio_backend(backend.record)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.error(
                "Failed to connect to %s: %s", backend.name, reason, extra={"backend": backend.name}
            )
            backend.mark_failed(reason)
            return False

        backend.mark_connected(client, server_info, tools)
        logger.info(
            "Connected to %s with %d tools",
            backend.name,
            len(backend.tools),
            extra={"backend": backend.name},
        )
        return True

    async def connect_stdio_backend(
        self, record: BackendRecord
    ) -> tuple[BackendClient, Implementation | None, list[Tool]]:
        """Spawn the backend process, perform the handshake and fetch its tools.

        Raises:
            BackendConnectError: On spawn, handshake or catalog failure.
        """
        client = await self._client_factory(record, self.connect_timeout)
        return client, client.server_info, client.tools

    async def shutdown(self) -> None:
        """Release every backend client and clear the tool index."""
        async with self.lock:
            logger.info("Shutting down all backend connections")
            for backend in self.backends.values():
                if backend.client is not None:
                    logger.info("Closing connection to MCP %s", backend.name)
                await backend.release()
                backend.status = BackendStatus.DISCONNECTED
                backend.error = None
                backend.tools = []
            self._tool_index.clear()

    async def restart_backend(self, backend_id: int) -> BackendInfo:
        """Replace one backend's connection with a fresh one.

        Raises:
            NotFoundError: If *backend_id* is no longer a gateway member.
            ConfigError: If the store cannot be read.
        """
        async with self.lock:
            try:
                record = self.store.get_gateway_backend(backend_id)
            except sqlite3.Error as exc:
                raise ConfigError(f"Failed to read gateway backend {backend_id}: {exc}") from exc
            if record.is_gateway_entry:
                raise NotFoundError(f"MCP {backend_id} not found in gateway")

            old = self.backends.get(backend_id)
            restart_count = 0
            if old is not None:
                restart_count = old.restart_count
                old.status = BackendStatus.RESTARTING
                await old.release()

            logger.info("Restarting backend %s", record.name, extra={"backend": record.name})
            backend = BackendConnection(record, restart_count=restart_count)
            self.backends[backend_id] = backend
            if await self._connect(backend, status=BackendStatus.RESTARTING):
                backend.restart_count += 1
            self.build_tool_index()
            return backend.to_info()

    async def ensure_connected(self, backend_name: str) -> list[Tool]:
        """Return a backend's catalog, connecting it first if it is not CONNECTED.

        A name that is not yet known but is an enabled member in the store
        (enabled after startup) is adopted and connected.

        Raises:
            UnknownBackendError: If no backend has that name.
            BackendConnectError: If the connect attempt fails, or a known
                backend was removed or disabled since startup.
        """
        async with self.lock:
            backend = self.find_backend(backend_name)
            if backend is None:
                record = self._find_enabled_record(backend_name)
                if record is None:
                    raise UnknownBackendError(f"Unknown MCP: {backend_name}")
                backend = await self._add_backend(record)
                self.build_tool_index()
            elif backend.status is not BackendStatus.CONNECTED:
                record = self._current_record(backend)
                logger.info(
                    "Connecting %s on demand (was %s)",
                    backend.name,
                    backend.status.value,
                    extra={"backend": backend.name},
                )
                await backend.release()
                backend.record = record
                await self._connect(backend)
                self.build_tool_index()

            if backend.status is not BackendStatus.CONNECTED:
                raise BackendConnectError(backend.error or f"Backend {backend.name} is not connected")
            return list(backend.tools)

    def _current_record(self, backend: BackendConnection) -> BackendRecord:
        """Re-read a known backend's record so edits since startup take effect.

        Raises:
            BackendConnectError: If it was removed or disabled since startup.
        """
        try:
            record = self.store.get_gateway_backend(backend.id)
        except NotFoundError as exc:
            raise BackendConnectError(f"MCP {backend.name} is no longer in the gateway") from exc
        except sqlite3.Error as exc:
            raise ConfigError(f"Failed to read gateway backend {backend.id}: {exc}") from exc
        if not record.enabled:
            raise BackendConnectError(f"MCP {backend.name} is disabled in the gateway")
        return record

    def _find_enabled_record(self, backend_name: str) -> BackendRecord | None:
        try:
            records = self.store.get_enabled_gateway_backends()
        except sqlite3.Error as exc:
            raise ConfigError(f"Failed to read gateway backends: {exc}") from exc
        for record in records:
            if record.name == backend_name and not record.is_gateway_entry:
                return record
        return None

    # ------------------------------------------------------------------
    # Tool index
    # ------------------------------------------------------------------

    def build_tool_index(self) -> None:
        """Rebuild the index from every CONNECTED backend's catalog."""
        self._tool_index.clear()
        for backend in self.backends.values():
            if backend.status is not BackendStatus.CONNECTED:
                continue
            for tool in backend.tools:
                namespaced = namespace_tool(backend.name, tool.name)
                previous = self._tool_index.get(namespaced)
                if previous is not None:
                    logger.warning(
                        "Tool name collision for %r between %s and %s; keeping %s",
                        namespaced,
                        previous.backend_name,
                        backend.name,
                        backend.name,
                    )
                self._tool_index[namespaced] = ToolMapping(
                    backend_id=backend.id,
                    backend_name=backend.name,
                    original_name=tool.name,
                    tool=tool,
                )

    def get_tools(self) -> list[Tool]:
        """Aggregated catalog with namespaced names and ``[backend]`` description prefixes."""
        tools: list[Tool] = []
        for namespaced, mapping in self._tool_index.items():
            desc = mapping.tool.description
            prefix = f"[{mapping.backend_name}]"
            tools.append(
                mapping.tool.model_copy(
                    update={
                        "name": namespaced,
                        "description": f"{prefix} {desc}" if desc else prefix,
                    }
                )
            )
        return tools

    def tool_count(self) -> int:
        return len(self._tool_index)

    def get_tool_mapping(self, namespaced_name: str) -> ToolMapping | None:
        return self._tool_index.get(namespaced_name)

    def get_backends_info(self) -> list[BackendInfo]:
        return [backend.to_info() for backend in self.backends.values()]

    def find_backend(self, backend_name: str) -> BackendConnection | None:
        for backend in self.backends.values():
            if backend.name == backend_name:
                return backend
        return None

    async def snapshot(self) -> tuple[list[BackendInfo], int]:
        """Backend infos and tool count, read under the manager lock."""
        async with self.lock:
            return self.get_backends_info(), self.tool_count()

    async def list_configured(self) -> tuple[list[BackendInfo], int]:
        """Like ``snapshot()``, plus enabled members not loaded yet.

        Members enabled after startup are listed as DISCONNECTED with no
        tools; nothing is connected. A failed store read only logs.
        """
        async with self.lock:
            infos = self.get_backends_info()
            try:
                records = self.store.get_enabled_gateway_backends()
            except sqlite3.Error as exc:
                logger.warning("Failed to read gateway backends for listing: %s", exc)
                records = []
            known = {info.name for info in infos}
            for record in records:
                if record.is_gateway_entry or record.name in known:
                    continue
                infos.append(BackendConnection(record).to_info())
            return infos, self.tool_count()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def call_tool(self, namespaced_name: str, arguments: dict[str, Any]) -> CallToolResult:
        """Route a call by namespaced name to the owning backend.

        Raises:
            UnknownToolError: If the name is not in the index.
            NotConnectedError: If the owning backend is not connected.
        """
        async with self.lock:
            mapping = self._tool_index.get(namespaced_name)
            if mapping is None:
                raise UnknownToolError(f"Unknown tool: {namespaced_name}")
            backend = self.backends.get(mapping.backend_id)
            if backend is None:
                raise NotConnectedError(f"Backend not found for MCP {mapping.backend_name}")
            return await self._call(backend, mapping.original_name, arguments)

    async def call_backend_tool(
        self, backend_name: str, tool_name: str, arguments: dict[str, Any]
    ) -> CallToolResult:
        """Route a call by backend name and original tool name.

        Raises:
            UnknownBackendError: If no backend has that name.
            NotConnectedError: If the backend is not connected.
            UnknownToolError: If the backend does not report that tool.
        """
        async with self.lock:
            backend = self.find_backend(backend_name)
            if backend is None:
                raise UnknownBackendError(f"Unknown MCP: {backend_name}")
            self._require_connected(backend)
            if not any(tool.name == tool_name for tool in backend.tools):
                raise UnknownToolError(f"Unknown tool {tool_name!r} on MCP {backend_name}")
            return await self._call(backend, tool_name, arguments)

    def _require_connected(self, backend: BackendConnection) -> BackendClient:
        if backend.status is not BackendStatus.CONNECTED:
            detail = backend.status.value
            if backend.error:
                detail = f"{detail}: {backend.error}"
            raise NotConnectedError(f"Backend {backend.name} is not connected (status: {detail})")
        if backend.client is None:
            raise NotConnectedError(f"Backend {backend.name} has no active client")
        return backend.client

    async def _call(
        self, backend: BackendConnection, tool_name: str, arguments: dict[str, Any]
    ) -> CallToolResult:
        client = self._require_connected(backend)
        context = {"backend": backend.name, "tool": tool_name}
        logger.info("Calling tool %s on backend %s", tool_name, backend.name, extra=context)
        try:
            return await client.call_tool(tool_name, arguments)
        except (BackendConnectError, NotConnectedError) as exc:
            logger.error(
                "Backend %s lost during call to %s: %s",
                backend.name,
                tool_name,
                exc,
                extra=context,
            )
            await backend.release()
            backend.mark_failed(str(exc))
            self.build_tool_index()
            raise
