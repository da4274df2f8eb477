"""
Tool Server Manager: launches and manages MCP tool server processes.

Usage:
    manager = ToolServerManager()

    # Register a server
    manager.register_server("calculator", [sys.executable, "-m", "mcp_stdio_tools.servers.calculator"])

    # Start it (handshake + tool discovery)
    manager.start("calculator")

    # Call a tool
    result = manager.call("calculator", "calculate_sum", {"a": 2, "b": 2})

    # Stop everything
    manager.stop_all()

Each server gets its own StdioTransport and McpClient session.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from mcp_stdio_tools.client import McpClient
from mcp_stdio_tools.config import ClientConfig, TransportConfig
from mcp_stdio_tools.errors import McpError, RequestTimeoutError
from mcp_stdio_tools.transport import StdioTransport

logger = logging.getLogger(__name__)


class ToolServerManager:
    """
    Manages the lifecycle of MCP tool server processes.

    Responsibilities:
    - Launch tool servers as subprocesses (stdio transport)
    - Run the handshake and discover each server's tools
    - Route tool calls to the correct server
    - Graceful shutdown
    """

    def __init__(
        self,
        client_name: str = "mcp-stdio-tools",
        client_version: str = "1.0.0",
        client_config: ClientConfig | None = None,
        transport_config: TransportConfig | None = None,
    ):
        self.client_name = client_name
        self.client_version = client_version
        self.client_config = client_config or ClientConfig()
        self.transport_config = transport_config
        self._servers: dict[str, dict] = {}
        # server_id → {
        #   "command": [...],
        #   "env": dict | None,
        #   "cwd": str | None,
        #   "client": McpClient | None,
        #   "tools": [definition, ...] (discovered after start),
        # }

    @classmethod
    def from_config(cls, servers: Mapping[str, Mapping[str, Any]], **kwargs) -> "ToolServerManager":
        """Build a manager from ``{server_id: {"command": [...], "env": {...}, "cwd": ...}}``."""
        manager = cls(**kwargs)
        for server_id, entry in servers.items():
            if "command" not in entry:
                raise ValueError(f"Server {server_id} has no command")
            manager.register_server(
                server_id,
                list(entry["command"]),
                env=entry.get("env"),
                cwd=entry.get("cwd"),
            )
        return manager

    def register_server(
        self,
        server_id: str,
        command: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        """Register a tool server (does not start it yet)."""
        self._servers[server_id] = {
            "command": command,
            "env": env,
            "cwd": cwd,
            "client": None,
            "tools": [],
        }
        logger.info(f"Registered server: {server_id} ({' '.join(command)})")

    def start(self, server_id: str, timeout: float | None = None) -> list[dict]:
        """
        Start a tool server and discover its tools.

        Returns:
            List of tool definitions from the server.

        Raises:
            ProtocolVersionError, McpConnectionError: the server rejected the handshake.
            RequestTimeoutError: no handshake reply within ``timeout``.
        """
        server = self._get(server_id)
        if server["client"] is not None:
            self.stop(server_id)

        timeout = self.client_config.handshake_timeout if timeout is None else timeout
        client = McpClient(
            name=self.client_name,
            version=self.client_version,
            capabilities={"tools": {}},
            config=self.client_config,
        )
        client.on_error(lambda error: logger.warning(f"[{server_id}] {error}"))

        transport = StdioTransport(
            server["command"],
            env=server["env"],
            cwd=server["cwd"],
            config=self.transport_config,
        )
        client.connect(transport)
        server["client"] = client

        if not client.wait_until_initialized(timeout):
            client.close()
            server["client"] = None
            if client.handshake_error is not None:
                raise client.handshake_error
            raise RequestTimeoutError(
                f"Server {server_id} did not complete the handshake within {timeout}s"
            )

        server["tools"] = client.list_tools()
        tool_names = [t["name"] for t in server["tools"]]
        logger.info(f"Started {server_id}: tools={tool_names}")
        return server["tools"]

    def start_all(self) -> dict[str, list[dict]]:
        """Start all registered servers. Returns {server_id: [tool_definitions]}."""
        results = {}
        for server_id in self._servers:
            try:
                results[server_id] = self.start(server_id)
            except McpError as e:
                logger.error(f"Failed to start {server_id}: {e}")
                results[server_id] = []
        return results

    def stop(self, server_id: str) -> None:
        """Stop a tool server."""
        server = self._servers.get(server_id)
        if server and server["client"]:
            server["client"].close()
            server["client"] = None
            logger.info(f"Stopped {server_id}")

    def stop_all(self) -> None:
        """Stop all running servers."""
        for server_id in list(self._servers.keys()):
            self.stop(server_id)

    def call(
        self,
        server_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """
        Call a tool on a specific server.

        Returns:
            The tool envelope ({content: [...]} or {isError: true, ...}).
        """
        server = self._get(server_id)
        client = server["client"]
        if not self.is_running(server_id):
            raise McpError(f"Server {server_id} is not running. Call start() first.")
        return client.call_tool(tool_name, arguments, timeout=timeout)

    def list_tools(self, server_id: str) -> list[dict]:
        """List discovered tools for a server."""
        server = self._servers.get(server_id)
        return server["tools"] if server else []

    def list_servers(self) -> dict[str, bool]:
        """List all servers and their running status."""
        return {sid: self.is_running(sid) for sid in self._servers}

    def is_running(self, server_id: str) -> bool:
        """Check if a specific server is running."""
        server = self._servers.get(server_id)
        return (
            server is not None
            and server["client"] is not None
            and server["client"].initialized
            and not server["client"].closed
        )

    def _get(self, server_id: str) -> dict:
        server = self._servers.get(server_id)
        if not server:
            raise ValueError(f"Unknown server: {server_id}")
        return server
