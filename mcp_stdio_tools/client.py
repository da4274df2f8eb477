"""
MCP client: drives one session over a Transport.

Usage:
    client = McpClient(name="demo", version="1.0.0", capabilities={"tools": {}})
    client.on_error(lambda error: print(f"MCP error: {error}"))

    transport = StdioTransport([sys.executable, "-m", "mcp_stdio_tools.servers.calculator"])
    client.connect(transport)          # sends initialize, returns immediately
    client.wait_until_initialized(5)   # optional: block for the handshake

    tools = client.list_tools()
    result = client.call_tool("calculate_sum", {"a": 5, "b": 3})

    client.close()

connect() is fire-and-forget: a failed handshake closes the session and is
reported to the registered error handlers, never raised from connect().
Blocking calls (list_tools, call_tool) raise their own failures.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable

from mcp_stdio_tools.config import ClientConfig
from mcp_stdio_tools.errors import (
    METHOD_NOT_FOUND,
    PROTOCOL_ERROR,
    McpConnectionError,
    McpError,
    ProtocolVersionError,
    RequestTimeoutError,
    ToolError,
    TransportError,
)
from mcp_stdio_tools.transport import (
    LATEST_PROTOCOL_VERSION,
    SUPPORTED_PROTOCOL_VERSIONS,
    JsonRpcRequest,
    JsonRpcResponse,
    Transport,
)

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[McpError], None]


def log_error(error: McpError) -> None:
    """Fallback handler used while no error handler is registered."""
    logger.error(f"MCP client error: {error}")


def _normalize_id(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


class McpClient:
    """
    Caller side of an MCP session.

    Responses are correlated by request id. Each blocking call waits on a
    condition that the transport's reader thread signals whenever an
    id-carrying frame arrives.
    """

    supported_protocol_versions = SUPPORTED_PROTOCOL_VERSIONS

    def __init__(
        self,
        name: str,
        version: str,
        capabilities: dict[str, Any] | None = None,
        request_timeout: float | None = None,
        poll_interval: float | None = None,
        config: ClientConfig | None = None,
    ):
        self.name = name
        self.version = version
        self.capabilities = capabilities or {}
        self.config = config or ClientConfig()
        self.request_timeout = self.config.request_timeout if request_timeout is None else request_timeout
        self.poll_interval = self.config.poll_interval if poll_interval is None else poll_interval

        self.server_info: dict[str, Any] | None = None
        self.server_capabilities: dict[str, Any] | None = None
        self.protocol_version: str | None = None
        self.handshake_error: McpError | None = None

        self._transport: Transport | None = None
        self._message_id = 0
        self._initialize_id: int | None = None
        self._initialized = False
        self._closing = False

        self._error_handlers: list[ErrorHandler] = []
        self._fallback_error_handler: ErrorHandler = log_error

        self._lock = threading.Lock()
        self._response_cv = threading.Condition(self._lock)
        # id -> method, for requests still awaiting a response
        self._pending: dict[int, str] = {}
        # id -> response frame, recorded on arrival
        self._responses: dict[int, dict[str, Any]] = {}
        # ids a blocking call is currently waiting on
        self._waiting: set[int] = set()

    # -- state --------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def closed(self) -> bool:
        return self._closing

    @property
    def pending_requests(self) -> dict[int, str]:
        with self._lock:
            return dict(self._pending)

    @property
    def error_handlers(self) -> list[ErrorHandler]:
        """Handlers that will receive the next error, fallback included."""
        return list(self._error_handlers) or [self._fallback_error_handler]

    def response_for(self, request_id: int) -> dict[str, Any] | None:
        """The recorded response frame for ``request_id``, if one arrived."""
        with self._lock:
            return self._responses.get(request_id)

    def on_error(self, handler: ErrorHandler) -> "McpClient":
        """Register an error handler. Handlers run in registration order."""
        self._error_handlers.append(handler)
        return self

    # -- session ------------------------------------------------------------

    def connect(self, transport: Transport) -> "McpClient":
        """Start the transport and send initialize. Returns before the reply."""
        self._transport = transport
        transport.on_close(self._handle_transport_close)
        transport.on_data(self.handle_frame)
        transport.on_error(self._handle_transport_error)
        transport.start()

        self._initialize_id = self._next_id("initialize")
        sent = self._write(JsonRpcRequest(
            method="initialize",
            params={
                "protocolVersion": LATEST_PROTOCOL_VERSION,
                "capabilities": self.capabilities,
                "clientInfo": {"name": self.name, "version": self.version},
            },
            id=self._initialize_id,
        ))
        if not sent:
            self._trigger_error(TransportError("Failed to send initialize request"))
        return self

    def wait_until_initialized(self, timeout: float | None = None) -> bool:
        """Block until the handshake succeeds or fails, the session closes, or timeout."""
        timeout = self.config.handshake_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        with self._response_cv:
            while not (self._initialized or self._closing or self.handshake_error):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._response_cv.wait(min(remaining, self.poll_interval))
            return self._initialized

    def close(self) -> None:
        """Close the session. Only the first call reaches the transport."""
        with self._response_cv:
            if self._closing:
                return
            self._closing = True
            transport = self._transport
            self._response_cv.notify_all()

        logger.info(f"Closing MCP client {self.name}")
        if transport is not None:
            transport.close()

    # -- requests -----------------------------------------------------------

    def request(self, method: str, params: dict[str, Any] | None = None) -> int:
        """Send a request without waiting. Returns its id."""
        request_id = self._next_id(method)
        if not self._write(JsonRpcRequest(method=method, params=params or {}, id=request_id)):
            with self._lock:
                self._pending.pop(request_id, None)
            raise TransportError(f"Failed to send {method} request")
        return request_id

    def notify(self, method: str, params: dict[str, Any] | None = None) -> bool:
        return self._write(JsonRpcRequest(method=method, params=params or {}))

    def list_tools(self, timeout: float | None = None) -> list[dict[str, Any]]:
        """Fetch tool definitions from the server."""
        response = self._call("tools/list", {}, timeout)
        if "error" in response:
            raise McpConnectionError(
                self._describe_error(response["error"]),
                code=response["error"].get("code"),
                data=response["error"].get("data"),
            )
        result = response.get("result") or {}
        return result.get("tools", []) if isinstance(result, dict) else result

    def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Invoke a tool and return its envelope ({content: [...]} / {isError: ...})."""
        response = self._call("tools/call", {"name": name, "arguments": arguments or {}}, timeout)
        if "error" in response:
            raise ToolError(
                self._describe_error(response["error"]),
                code=response["error"].get("code"),
                data=response["error"].get("data"),
            )
        return response.get("result")

    def _call(self, method: str, params: dict[str, Any], timeout: float | None) -> dict[str, Any]:
        if self._transport is None:
            raise McpConnectionError("Client is not connected")

        request_id = self._next_id(method, wait=True)
        if not self._write(JsonRpcRequest(method=method, params=params, id=request_id)):
            with self._lock:
                self._pending.pop(request_id, None)
                self._waiting.discard(request_id)
            raise TransportError(f"Failed to send {method} request")
        return self._wait_for_response(request_id, method, timeout)

    def _wait_for_response(self, request_id: int, method: str, timeout: float | None) -> dict[str, Any]:
        timeout = self.request_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        with self._response_cv:
            try:
                while request_id not in self._responses:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        self._pending.pop(request_id, None)
                        raise RequestTimeoutError(
                            f"Timed out after {timeout}s waiting for {method} (id {request_id})"
                        )
                    self._response_cv.wait(min(remaining, self.poll_interval))
                return self._responses.pop(request_id)
            finally:
                self._waiting.discard(request_id)

    def _next_id(self, method: str, wait: bool = False) -> int:
        with self._lock:
            self._message_id += 1
            request_id = self._message_id
            self._pending[request_id] = method
            if wait:
                self._waiting.add(request_id)
        return request_id

    def _write(self, message: JsonRpcRequest | JsonRpcResponse) -> bool:
        transport = self._transport
        if transport is None:
            return False
        return transport.send(message.to_json())

    # -- inbound ------------------------------------------------------------

    def handle_frame(self, data: str) -> None:
        """Process one frame delivered by the transport."""
        try:
            message = json.loads(data, strict=False)
        except ValueError as e:
            self._trigger_error(McpConnectionError(
                f"Error parsing response: {e}, Raw response: {data!r}"
            ))
            return
        if not isinstance(message, dict):
            self._trigger_error(McpConnectionError(f"Unexpected frame: {data!r}"))
            return

        error = message.get("error")
        if isinstance(error, dict) and self._is_version_rejection(error):
            self._fail_handshake(ProtocolVersionError(
                error.get("message", "Unsupported protocol version"),
                code=error.get("code"),
                data=error.get("data"),
            ))
            return

        request_id = _normalize_id(message.get("id"))
        if "method" in message:
            self._handle_server_message(message, request_id)
            return
        if request_id is None:
            if error is not None:
                self._trigger_error(McpConnectionError(self._describe_error(error)))
            else:
                logger.warning(f"Discarding frame without id: {data[:200]}")
            return

        with self._response_cv:
            if request_id not in self._pending and request_id not in self._responses:
                logger.debug(f"Discarding response for unknown id {request_id}")
                return
            self._pending.pop(request_id, None)
            self._responses[request_id] = message
            unclaimed = request_id not in self._waiting
            self._response_cv.notify_all()

        if request_id == self._initialize_id:
            self._complete_handshake(message)
        elif error is not None and unclaimed:
            self._trigger_error(McpConnectionError(
                self._describe_error(error), code=error.get("code"), data=error.get("data")
            ))

    def _handle_server_message(self, message: dict[str, Any], request_id: Any) -> None:
        method = message.get("method")
        if request_id is None:
            logger.debug(f"Ignoring server notification {method}")
            return
        # No server-to-client requests are implemented.
        self._write(JsonRpcResponse.failure(request_id, METHOD_NOT_FOUND, f"Method not found: {method}"))

    def _complete_handshake(self, response: dict[str, Any]) -> None:
        if "error" in response:
            self._reject_handshake(McpConnectionError(
                self._describe_error(response["error"]),
                code=response["error"].get("code"),
                data=response["error"].get("data"),
            ))
            return

        result = response.get("result")
        if not isinstance(result, dict):
            self._reject_handshake(McpConnectionError(f"Malformed initialize result: {result!r}"))
            return

        self.server_info = result.get("serverInfo")
        self.server_capabilities = result.get("capabilities")
        self.protocol_version = result.get("protocolVersion")

        if self.protocol_version not in self.supported_protocol_versions:
            self._fail_handshake(ProtocolVersionError(
                f"Unsupported protocol version: {self.protocol_version}. "
                f"This client supports: {', '.join(self.supported_protocol_versions)}"
            ))
            return

        with self._response_cv:
            self._initialized = True
            self._response_cv.notify_all()
        server_name = (self.server_info or {}).get("name")
        logger.info(f"Initialized session with {server_name} (protocol {self.protocol_version})")
        self.notify("initialized")

    def _reject_handshake(self, error: McpConnectionError) -> None:
        with self._response_cv:
            self.handshake_error = error
            self._response_cv.notify_all()
        self._trigger_error(error)

    def _fail_handshake(self, error: ProtocolVersionError) -> None:
        with self._response_cv:
            self._initialized = False
            self.handshake_error = error
        self.close()
        self._trigger_error(error)

    @staticmethod
    def _is_version_rejection(error: dict[str, Any]) -> bool:
        message = str(error.get("message", "")).lower()
        return error.get("code") == PROTOCOL_ERROR and "unsupported protocol version" in message

    @staticmethod
    def _describe_error(error: Any) -> str:
        if isinstance(error, dict):
            return f"Error from server: {error.get('message')} ({error.get('code')})"
        return f"Error from server: {error}"

    def _handle_transport_error(self, error: Exception) -> None:
        self._trigger_error(McpConnectionError(f"Transport error: {error}"))

    def _handle_transport_close(self, exit_status: int | None) -> None:
        logger.info(f"Transport closed (exit status {exit_status})")
        self.close()

    def _trigger_error(self, error: McpError) -> None:
        for handler in self.error_handlers:
            try:
                handler(error)
            except Exception:
                logger.exception("MCP client error handler failed")
