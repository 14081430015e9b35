"""MCP adapters: stdio MCP servers for external services and a server creator."""

__version__ = "0.3.0"
