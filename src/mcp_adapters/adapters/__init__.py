"""Integration adapters, one MCP server per external service."""
