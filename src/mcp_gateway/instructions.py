"""MCP server instruction strings.

Returned in the MCP InitializeResult.instructions field and injected into
the LLM's context by compliant MCP clients.
"""

GATEWAY = """\
MCP Gateway: one endpoint in front of several MCP servers. Their tools are not listed directly; reach them through three tools, in this order.

1. list_available_mcps: see every configured MCP with its status, tool count and, for failed ones, the failure reason. Cheap, no side effects.

2. load_mcp_tools(mcp_name): get one MCP's tools with descriptions and input schemas. Connects the MCP first if it is not connected. Load only the MCPs the task needs.

3. call_mcp_tool(mcp_name, tool_name, arguments): run one tool. Use the tool name exactly as load_mcp_tools returned it and pass arguments matching its input schema.

A result flagged as an error from call_mcp_tool may come from the tool itself (bad input, missing file) rather than the gateway; read the message before retrying.\
"""
