"""
MCP over stdio: client and server engines for tool invocation.

Architecture:
    ┌──────────────┐    stdio     ┌───────────────┐
    │  McpClient   │ ──────────── │  McpServer    │
    │  (caller)    │   JSON-RPC   │  (subprocess) │
    └──────────────┘    pipes     └───────────────┘

Each tool server is a standalone process that communicates via
stdin/stdout using JSON-RPC 2.0 messages, one per line (the MCP protocol).

StdioTransport owns the child process and frames its output.
McpClient drives the handshake and correlates responses to requests.
McpServer dispatches messages and invokes tools from its ToolRegistry.

The ToolServerManager launches and manages several server processes,
and the bridge module turns their tools into LangChain tools.
"""

from mcp_stdio_tools.client import McpClient
from mcp_stdio_tools.errors import (
    McpConnectionError,
    McpError,
    ProtocolVersionError,
    RequestTimeoutError,
    ToolError,
    TransportError,
)
from mcp_stdio_tools.manager import ToolServerManager
from mcp_stdio_tools.server import McpServer, ServerState
from mcp_stdio_tools.server_transport import StdioServerTransport
from mcp_stdio_tools.tools import Tool, ToolHandler, ToolParameter, ToolRegistry, param
from mcp_stdio_tools.transport import FrameDecoder, StdioTransport


# Bridge requires langchain; import lazily to keep servers lightweight
def mcp_to_langchain_tool(*args, **kwargs):
    from mcp_stdio_tools.bridge import mcp_to_langchain_tool as _impl
    return _impl(*args, **kwargs)


def langchain_tools(*args, **kwargs):
    from mcp_stdio_tools.bridge import langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "FrameDecoder",
    "McpClient",
    "McpConnectionError",
    "McpError",
    "McpServer",
    "ProtocolVersionError",
    "RequestTimeoutError",
    "ServerState",
    "StdioServerTransport",
    "StdioTransport",
    "Tool",
    "ToolError",
    "ToolHandler",
    "ToolParameter",
    "ToolRegistry",
    "ToolServerManager",
    "TransportError",
    "langchain_tools",
    "mcp_to_langchain_tool",
    "param",
]
