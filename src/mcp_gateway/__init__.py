"""MCP Gateway - several stdio MCP servers behind one Streamable HTTP endpoint.

Backends come from a local SQLite library; the gateway connects every
enabled one at startup and exposes them to clients through three
meta-tools (list_available_mcps, load_mcp_tools, call_mcp_tool).

Usage:
    mcp-gateway serve
    python -m mcp_gateway serve --port 23848
"""

__version__ = "0.1.0"
