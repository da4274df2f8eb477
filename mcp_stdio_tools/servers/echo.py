"""
Echo MCP Tool Server: minimal reference implementation.

Use this as a template for building new tool servers.
It implements a single tool that echoes back its input,
useful for testing the transport layer.

Launch:
    python -m mcp_stdio_tools.servers.echo

Test:
    echo '{"jsonrpc":"2.0","method":"tools/call","params":{"name":"echo","arguments":{"message":"hi"}},"id":1}' | python -m mcp_stdio_tools.servers.echo
"""

from mcp_stdio_tools.config import configure_logging
from mcp_stdio_tools.server import McpServer

server = McpServer(name="echo", version="1.0.0")


@server.tool(
    description="Echo back the input message",
    parameters={"message": {"type": str, "description": "The message to echo back"}},
)
def echo(message):
    return f"Echo: {message}"


if __name__ == "__main__":
    configure_logging()
    server.run()
