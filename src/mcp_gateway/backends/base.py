"""Abstract base class for backend MCP clients."""

from abc import ABC, abstractmethod

from mcp.types import CallToolResult, Implementation, Tool


class BackendClient(ABC):
    """Client handle for one backend MCP server.

    A started client has completed the MCP handshake and holds the
    backend's tool catalog. The handle exclusively owns whatever OS
    resources the transport needs (for stdio, the child process) and
    releases them in ``stop()``.
    """

    def __init__(self, name: str):
        self.name = name
        self._started = False
        self._server_info: Implementation | None = None
        self._tools: list[Tool] = []

    @property
    def started(self) -> bool:
        return self._started

    @property
    def server_info(self) -> Implementation | None:
        """Server identity reported in the initialize response."""
        return self._server_info

    @property
    def tools(self) -> list[Tool]:
        """Tool catalog fetched right after the handshake."""
        return list(self._tools)

    @abstractmethod
    async def start(self) -> None:
        """Spawn/connect, perform the handshake and fetch the tool catalog."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Release the connection and any owned process."""
        ...

    @abstractmethod
    async def call_tool(self, name: str, arguments: dict) -> CallToolResult:
        """Call a tool by its original (backend-local) name."""
        ...
