"""MCP tool server for ticketq."""
