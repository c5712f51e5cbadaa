"""mailmcp: email tools (query, read, send, account login) served over MCP."""
