"""Shared test fixtures."""

import pytest
from mcp.types import CallToolResult, Implementation, TextContent, Tool

from mcp_gateway.backends.base import BackendClient
from mcp_gateway.exceptions import BackendConnectError
from mcp_gateway.store import GatewayStore


class FakeClient(BackendClient):
    """In-memory backend client for testing."""

    def __init__(self, name: str, tools: list[Tool] | None = None, responses: dict | None = None):
        super().__init__(name)
        self._catalog = list(tools or [])
        self.responses = responses or {}
        self.calls: list[dict] = []
        self.stopped = False
        self.fail_calls_with: Exception | None = None

    async def start(self) -> None:
        self._started = True
        self._server_info = Implementation(name=f"{self.name}-server", version="1.0.0")
        self._tools = list(self._catalog)

    async def stop(self) -> None:
        self._started = False
        self.stopped = True

    async def call_tool(self, name: str, arguments: dict) -> CallToolResult:
        self.calls.append({"name": name, "arguments": arguments})
        if self.fail_calls_with is not None:
            raise self.fail_calls_with
        response = self.responses.get(name)
        if isinstance(response, CallToolResult):
            return response
        text = response if response is not None else f"result from {self.name}/{name}"
        return CallToolResult(content=[TextContent(type="text", text=text)], isError=False)


class FakeFactory:
    """Client factory keyed by backend name.

    ``catalogs`` maps name -> tool list. Names listed in ``failures`` raise
    ``BackendConnectError`` with the given message instead of connecting.
    """

    def __init__(self, catalogs: dict | None = None, failures: dict | None = None):
        self.catalogs = dict(catalogs or {})
        self.failures = dict(failures or {})
        self.clients: dict[str, list[FakeClient]] = {}
        self.attempts: list[str] = []
        self.records: list = []

    async def __call__(self, record, timeout: float) -> FakeClient:
        self.attempts.append(record.name)
        self.records.append(record)
        if record.name in self.failures:
            raise BackendConnectError(self.failures[record.name])
        client = FakeClient(record.name, tools=self.catalogs.get(record.name, []))
        await client.start()
        self.clients.setdefault(record.name, []).append(client)
        return client

    def latest(self, name: str) -> FakeClient:
        return self.clients[name][-1]


def make_tool(name: str, description: str = "") -> Tool:
    """Create a Tool instance for testing."""
    return Tool(
        name=name,
        description=description,
        inputSchema={"type": "object", "properties": {}},
    )


def add_member(store: GatewayStore, name: str, *, transport_type: str = "stdio",
               enabled: bool = True) -> int:
    """Create a library entry and make it a gateway member. Returns the MCP id."""
    mcp_id = store.create_mcp(
        name,
        transport_type=transport_type,
        command="fake-mcp" if transport_type == "stdio" else None,
        args=["--serve"] if transport_type == "stdio" else None,
        url=None if transport_type == "stdio" else "http://127.0.0.1:9/mcp",
    )
    store.add_gateway_backend(mcp_id)
    if not enabled:
        store.toggle_gateway_backend(mcp_id, False)
    return mcp_id


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store with schema under tmp_path."""
    s = GatewayStore(tmp_path / "gateway.db")
    s.init_schema()
    yield s
    s.close()


@pytest.fixture
def ping_factory():
    """alpha and beta each expose a tool named ping."""
    return FakeFactory(
        catalogs={
            "alpha": [make_tool("ping", "Ping alpha")],
            "beta": [make_tool("ping", "Ping beta"), make_tool("echo")],
        }
    )
