"""Error types raised by adapter tool handlers.

The MCP SDK reports any exception raised from a tool handler as a result
with ``isError`` set, using the exception message as the text.  Handlers
therefore raise one of these instead of returning error strings.
"""

from __future__ import annotations


class AdapterError(Exception):
    """Base error for all adapter failures."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConfigurationError(AdapterError):
    """A required environment variable or credential is missing."""


class ValidationError(AdapterError):
    """Caller input was rejected before any side effect."""


class ExternalServiceError(AdapterError):
    """An HTTP API, database, or subprocess call failed."""
