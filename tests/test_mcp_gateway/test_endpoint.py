"""Tests for the HTTP surfaces: /mcp, /health and /api/v1."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from starlette.testclient import TestClient

from mcp_gateway.config import GatewayConfig
from mcp_gateway.manager import GatewayBackendManager
from mcp_gateway.mcp_endpoint import MCPASGIApp
from mcp_gateway.protocol import GatewayProtocolHandler
from mcp_gateway.server import GatewayServerState
from .conftest import FakeFactory, add_member, make_tool

MCP_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}

INIT_REQUEST = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2025-03-26",
        "capabilities": {},
        "clientInfo": {"name": "test", "version": "1.0"},
    },
}


@pytest.fixture
def gateway(store):
    """A state whose manager has alpha FAILED and beta CONNECTED (no listener)."""
    ids = {"alpha": add_member(store, "alpha"), "beta": add_member(store, "beta")}
    factory = FakeFactory(
        catalogs={"beta": [make_tool("ping", "Ping beta"), make_tool("echo")]},
        failures={"alpha": "spawn failed"},
    )
    manager = GatewayBackendManager(store, client_factory=factory)
    asyncio.run(manager.load_and_connect())
    state = GatewayServerState(store, GatewayConfig(port=4000), manager=manager)
    return state, ids, factory


@pytest.fixture
def client(gateway):
    state, _, _ = gateway
    app = state.create_app(GatewayProtocolHandler(state.manager))
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def _sse_payload(resp) -> dict:
    """Extract the JSON-RPC message from a JSON or single-event SSE response."""
    if resp.headers["content-type"].startswith("application/json"):
        return resp.json()
    for line in resp.text.splitlines():
        if line.startswith("data:"):
            return json.loads(line[len("data:"):].strip())
    raise AssertionError(f"no data line in response: {resp.text!r}")


# ---------------------------------------------------------------------------
# MCPASGIApp unit tests
# ---------------------------------------------------------------------------

class TestMCPASGIApp:
    @pytest.fixture
    def dummy_session_manager(self):
        mgr = MagicMock()

        async def fake_handle(scope, receive, send):
            pass

        mgr.handle_request = MagicMock(side_effect=fake_handle)
        return mgr

    def _scope(self, content_length: str | None) -> dict:
        headers = []
        if content_length is not None:
            headers.append((b"content-length", content_length.encode()))
        return {"type": "http", "method": "POST", "path": "/mcp", "headers": headers}

    async def test_oversized_body_rejected(self, dummy_session_manager):
        app = MCPASGIApp(dummy_session_manager)
        sent = []

        async def receive():
            return {"type": "http.request", "body": b""}

        async def send(msg):
            sent.append(msg)

        await app(self._scope(str(11 * 1024 * 1024)), receive, send)

        assert any(msg.get("status") == 413 for msg in sent)
        dummy_session_manager.handle_request.assert_not_called()

    async def test_normal_body_delegated(self, dummy_session_manager):
        app = MCPASGIApp(dummy_session_manager)

        async def receive():
            return {}

        async def send(msg):
            pass

        await app(self._scope("512"), receive, send)
        dummy_session_manager.handle_request.assert_called_once()

    async def test_missing_or_bad_length_delegated(self, dummy_session_manager):
        app = MCPASGIApp(dummy_session_manager)

        async def receive():
            return {}

        async def send(msg):
            pass

        await app(self._scope(None), receive, send)
        await app(self._scope("not-a-number"), receive, send)
        assert dummy_session_manager.handle_request.call_count == 2


# ---------------------------------------------------------------------------
# MCP over Streamable HTTP
# ---------------------------------------------------------------------------

class TestMCPIntegration:
    def test_mcp_post_initialize(self, client):
        resp = client.post("/mcp", json=INIT_REQUEST, headers=MCP_HEADERS)

        assert resp.status_code in (200, 202)
        result = _sse_payload(resp)["result"]
        assert result["serverInfo"]["name"] == "mcp-gateway"
        assert "list_available_mcps" in result["instructions"]

    def test_exact_path_not_redirected(self, client):
        resp = client.post("/mcp", json=INIT_REQUEST, headers=MCP_HEADERS, follow_redirects=False)
        assert resp.status_code != 307

    def test_tools_list_round_trip(self, client):
        init = client.post("/mcp", json=INIT_REQUEST, headers=MCP_HEADERS)
        session_id = init.headers["mcp-session-id"]
        headers = {
            **MCP_HEADERS,
            "mcp-session-id": session_id,
            "mcp-protocol-version": "2025-03-26",
        }
        client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers=headers,
        )

        resp = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}},
            headers=headers,
        )

        assert resp.status_code == 200
        names = [t["name"] for t in _sse_payload(resp)["result"]["tools"]]
        assert names == ["list_available_mcps", "load_mcp_tools", "call_mcp_tool"]


# ---------------------------------------------------------------------------
# Health and REST
# ---------------------------------------------------------------------------

class TestHealth:
    def test_degraded_when_a_backend_failed(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "degraded"
        assert data["tools_count"] == 2
        assert data["backends"]["alpha"] == {
            "status": "failed",
            "type": "stdio",
            "tools": 0,
            "detail": "spawn failed",
        }
        assert data["backends"]["beta"]["status"] == "connected"


class TestRest:
    def test_status(self, client):
        data = client.get("/api/v1/status").json()

        assert data["port"] == 4000
        assert data["mcp_endpoint"] == "http://127.0.0.1:4000/mcp"
        assert data["total_tools"] == 2
        assert [b["name"] for b in data["backends"]] == ["alpha", "beta"]

    def test_list_backends(self, client):
        data = client.get("/api/v1/backends").json()

        assert data["count"] == 2
        alpha = data["backends"][0]
        assert alpha["status"] == "failed"
        assert alpha["error_message"] == "spawn failed"
        assert alpha["restart_count"] == 0

    def test_list_tools_namespaced(self, client):
        data = client.get("/api/v1/tools").json()

        assert data["count"] == 2
        assert [t["name"] for t in data["tools"]] == ["beta__echo", "beta__ping"]
        ping = data["tools"][1]
        assert ping["backend"] == "beta"
        assert ping["description"] == "[beta] Ping beta"

    def test_list_tools_backend_filter(self, client):
        assert client.get("/api/v1/tools?backend=alpha").json()["count"] == 0
        assert client.get("/api/v1/tools?backend=beta").json()["count"] == 2

    def test_restart_backend(self, client, gateway):
        _, ids, factory = gateway
        del factory.failures["alpha"]
        factory.catalogs["alpha"] = [make_tool("ping")]

        resp = client.post(f"/api/v1/backends/{ids['alpha']}/restart")

        assert resp.status_code == 200
        assert resp.json()["status"] == "connected"
        assert resp.json()["restart_count"] == 1
        assert client.get("/api/v1/tools").json()["count"] == 3

    def test_restart_unknown_backend_404(self, client):
        resp = client.post("/api/v1/backends/999/restart")
        assert resp.status_code == 404

    def test_restart_bad_id_400(self, client):
        resp = client.post("/api/v1/backends/abc/restart")
        assert resp.status_code == 400

    def test_connection_config(self, client):
        assert client.get("/api/v1/connection-config").json() == {
            "mcp-gateway": {"type": "sse", "url": "http://127.0.0.1:4000/mcp"}
        }

    def test_cors_preflight(self, client):
        resp = client.options(
            "/api/v1/status",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "*"
