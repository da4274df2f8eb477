"""
MCP server engine.

A tool server is a standalone process that:
1. Reads JSON-RPC messages from stdin
2. Dispatches them by method (handshake, tool listing, tool calls, ...)
3. Writes JSON-RPC responses to stdout; notifications get no reply

To create a tool server:

    from mcp_stdio_tools.server import McpServer
    from mcp_stdio_tools.tools import param

    server = McpServer(name="my_server", version="1.0.0")

    @server.tool(description="Does something useful",
                 parameters=[param("input", "string", description="The input")])
    def my_tool(input):
        return f"processed: {input}"

    if __name__ == "__main__":
        server.run()

State machine: uninitialized -> initialized -> shutting_down -> stopped.
Once stopped the server ignores every further message.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable

from mcp_stdio_tools.errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PROTOCOL_ERROR,
    TOOL_EXECUTION_ERROR,
    JsonRpcError,
)
from mcp_stdio_tools.server_transport import ServerTransport, StdioServerTransport
from mcp_stdio_tools.tools import KEYWORDS, ParameterSpec, ToolHandler, ToolRegistry
from mcp_stdio_tools.transport import JSONRPC_VERSION, SUPPORTED_PROTOCOL_VERSIONS, JsonRpcResponse

logger = logging.getLogger(__name__)

MethodHandler = Callable[[dict[str, Any]], Any]


class ServerState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class McpServer:
    """
    Callee side of an MCP session.

    Supported methods:
        initialize, initialized, tools/list, tools/call, shutdown,
        and stubbed resources/list, roots/list, sampling/prepare,
        sampling/sample (replace them with set_handler()).
    """

    def __init__(
        self,
        name: str,
        version: str,
        capabilities: dict[str, Any] | None = None,
        tools: ToolRegistry | None = None,
        supported_versions: tuple[str, ...] = SUPPORTED_PROTOCOL_VERSIONS,
    ):
        self.name = name
        self.version = version
        self.capabilities = {"tools": {}} if capabilities is None else capabilities
        self.tools = tools if tools is not None else ToolRegistry()
        self.supported_versions = tuple(supported_versions)
        self.client_info: dict[str, Any] | None = None
        self.client_capabilities: dict[str, Any] | None = None

        self._state = ServerState.UNINITIALIZED
        self._transport: ServerTransport | None = None
        self._handlers: dict[str, MethodHandler] = {
            "initialize": self.handle_initialize,
            "initialized": self.handle_initialized,
            "notifications/initialized": self.handle_initialized,
            "resources/list": self.handle_resources_list,
            "roots/list": self.handle_roots_list,
            "sampling/prepare": self.handle_sampling_prepare,
            "sampling/sample": self.handle_sampling_sample,
            "tools/list": self.handle_tools_list,
            "tools/call": self.handle_tools_call,
            "shutdown": self.handle_shutdown,
        }

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._state is not ServerState.UNINITIALIZED

    # -- tool registration ----------------------------------------------------

    def register(self, handler: ToolHandler) -> None:
        """Register a class-based tool handler."""
        self.tools.register(handler)

    def tool(
        self,
        name: str | None = None,
        description: str | None = None,
        parameters: ParameterSpec = None,
        convention: str = KEYWORDS,
    ):
        return self.tools.tool(name, description, parameters, convention)

    def call_tool(self, name: str, arguments: Any = None) -> dict[str, Any]:
        return self.tools.call(name, arguments)

    def set_handler(self, method: str, handler: MethodHandler) -> None:
        """Install or replace the handler for ``method``."""
        self._handlers[method] = handler

    # -- running ------------------------------------------------------------

    def run(self, transport: ServerTransport | None = None) -> None:
        """
        Serve until the input closes or shutdown is requested.

        Defaults to a StdioServerTransport over this process's stdin/stdout.
        """
        if transport is None:
            transport = StdioServerTransport(self)
        self._transport = transport
        logger.info(f"Tool server {self.name} starting with {len(self.tools)} tools: "
                    f"{self.tools.names()}")
        transport.start()

    def attach(self, transport: ServerTransport) -> None:
        self._transport = transport

    def stop(self) -> None:
        """Stop the transport and go permanently inert. Idempotent."""
        if self._state is ServerState.STOPPED:
            return
        self._state = ServerState.STOPPED
        logger.info(f"Tool server {self.name} stopped")
        if self._transport is not None:
            self._transport.stop()

    def process_message(self, message: Any) -> dict[str, Any] | None:
        """Handle one message, send the reply (if any) and return it."""
        response = self.handle_message(message)
        if response is not None and self._transport is not None:
            self._transport.send_message(response)
        if self._state is ServerState.SHUTTING_DOWN:
            self.stop()
        return response

    def handle_message(self, message: Any) -> dict[str, Any] | None:
        """Compute the reply for one message. Never raises."""
        if self._state is ServerState.STOPPED:
            return None
        request_id = message.get("id") if isinstance(message, dict) else None
        try:
            return self._dispatch(message)
        except Exception as e:
            logger.exception("Unhandled error while processing message")
            if request_id is None:
                return None
            return JsonRpcResponse.failure(request_id, INTERNAL_ERROR, f"Internal error: {e}").to_dict()

    def _dispatch(self, message: Any) -> dict[str, Any] | None:
        if not isinstance(message, dict):
            logger.warning(f"Dropping non-object message: {message!r}")
            return None

        request_id = message.get("id")
        if message.get("jsonrpc") != JSONRPC_VERSION:
            if request_id is None:
                return None
            return JsonRpcResponse.failure(request_id, INVALID_REQUEST, "Invalid Request").to_dict()

        method = message.get("method")
        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            if request_id is None:
                logger.debug(f"Ignoring unknown notification {method!r}")
                return None
            return JsonRpcResponse.failure(
                request_id, METHOD_NOT_FOUND, f"Method not found: {method}"
            ).to_dict()

        params = message.get("params")
        if params is None:
            params = {}
        try:
            if not isinstance(params, dict):
                raise JsonRpcError(INVALID_PARAMS, "Invalid params: expected an object")
            logger.debug(f"Dispatching {method} (id {request_id})")
            result = handler(params)
        except JsonRpcError as e:
            if request_id is None:
                logger.warning(f"Notification {method} failed: {e.message}")
                return None
            return JsonRpcResponse(id=request_id, error=e.to_dict()).to_dict()

        if request_id is None:
            return None
        return JsonRpcResponse(id=request_id, result=result).to_dict()

    # -- method handlers ----------------------------------------------------

    def handle_initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        requested = params.get("protocolVersion")
        if requested not in self.supported_versions:
            raise JsonRpcError(
                PROTOCOL_ERROR,
                f"Unsupported protocol version: {requested}",
                {"supportedVersions": list(self.supported_versions)},
            )
        self.client_info = params.get("clientInfo")
        self.client_capabilities = params.get("capabilities")
        if self._state is ServerState.UNINITIALIZED:
            self._state = ServerState.INITIALIZED
        client_name = (self.client_info or {}).get("name")
        logger.info(f"Initialized by {client_name} (protocol {requested})")
        return {
            "protocolVersion": requested,
            "capabilities": self.capabilities,
            "serverInfo": {"name": self.name, "version": self.version},
        }

    def handle_initialized(self, params: dict[str, Any]) -> None:
        logger.debug("Client confirmed initialization")
        return None

    def handle_resources_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"resources": []}

    def handle_roots_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"roots": []}

    def handle_sampling_prepare(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"status": "not_implemented"}

    def handle_sampling_sample(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"status": "not_implemented"}

    def handle_tools_list(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"tools": self.tools.definitions()}

    def handle_tools_call(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str):
            raise JsonRpcError(INVALID_PARAMS, "Invalid params: 'name' must be a string")
        arguments = params.get("arguments")
        try:
            return self.tools.call(name, arguments)
        except Exception as e:
            logger.warning(f"tools/call {name} failed: {e}")
            raise JsonRpcError(TOOL_EXECUTION_ERROR, f"Tool execution error: {e}") from e

    def handle_shutdown(self, params: dict[str, Any]) -> dict[str, Any]:
        # process_message() sends the acknowledgment, then calls stop().
        self._state = ServerState.SHUTTING_DOWN
        return {}
