"""
Error codes and exception types shared by the client and server engines.

The integer codes are part of the wire contract: the first five are the
standard JSON-RPC 2.0 codes, the last two are MCP-specific.
"""

from __future__ import annotations

from typing import Any

# Standard JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

# MCP-specific error codes
TOOL_EXECUTION_ERROR = -32000
PROTOCOL_ERROR = -32001


class McpError(Exception):
    """Base exception for everything raised by this package."""

    def __init__(self, message: str, code: int | None = None, data: Any = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class TransportError(McpError):
    """Process or I/O failure on the transport."""


class FrameTooLargeError(TransportError):
    """Buffered, still-unparseable input grew past the configured frame limit."""

    def __init__(self, message: str, frames: list[str] | None = None):
        super().__init__(message)
        # Frames completed in the same chunk, before the overflow.
        self.frames = frames or []


class ProtocolVersionError(McpError):
    """Handshake failed because the protocol versions do not match."""


class McpConnectionError(McpError):
    """Malformed frame or error reported by the server outside a tool call."""


class ToolError(McpError):
    """A tools/call request came back with a JSON-RPC error."""


class RequestTimeoutError(McpError, TimeoutError):
    """No response arrived for a request before its deadline."""


class UnknownToolError(McpError, LookupError):
    """No tool with the requested name is registered."""


class JsonRpcError(McpError):
    """
    Raised by server-side method handlers to produce an error envelope.

    The server engine converts it into
    ``{"error": {"code": ..., "message": ..., "data": ...}}`` addressed to
    the request id.
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message, code=code, data=data)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error
