import json
import logging
import random
import threading
import time

import pytest

from mcp_stdio_tools.client import McpClient, log_error
from mcp_stdio_tools.errors import (
    McpConnectionError,
    ProtocolVersionError,
    RequestTimeoutError,
    ToolError,
    TransportError,
)

from conftest import FakeTransport, initialize_result, wait_for


def _server(message):
    """Minimal well-behaved peer: answers initialize, tools/list and tools/call."""
    method = message.get("method")
    if "id" not in message:
        return None
    if method == "initialize":
        return initialize_result(message["id"])
    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": message["id"], "result": {"tools": [{"name": "calculate_sum"}]}}
    if method == "tools/call":
        args = message["params"]["arguments"]
        text = f"The sum of {args['a']} and {args['b']} is {args['a'] + args['b']}"
        return {"jsonrpc": "2.0", "id": message["id"], "result": {"content": [{"type": "text", "text": text}]}}
    return None


def _client(**kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    return McpClient(name="test-client", version="0.1", capabilities={"tools": {}}, **kwargs)


def _connected(responder=_server, **kwargs):
    transport = FakeTransport(responder=responder)
    client = _client(**kwargs)
    errors = []
    client.on_error(errors.append)
    client.connect(transport)
    return client, transport, errors


def test_handshake_sends_initialize_then_initialized():
    client, transport, errors = _connected()
    assert client.wait_until_initialized(2)
    assert wait_for(lambda: "initialized" in transport.sent_methods())

    initialize = transport.sent[0]
    assert initialize["method"] == "initialize"
    assert initialize["params"] == {
        "protocolVersion": "2024-11-05",
        "capabilities": {"tools": {}},
        "clientInfo": {"name": "test-client", "version": "0.1"},
    }
    initialized = transport.last_sent("initialized")
    assert "id" not in initialized
    assert transport.sent_methods() == ["initialize", "initialized"]

    assert client.server_info == {"name": "X", "version": "1"}
    assert client.protocol_version == "2024-11-05"
    assert client.server_capabilities == {}
    assert errors == []


def test_connect_returns_before_handshake():
    transport = FakeTransport()
    client = _client()
    client.connect(transport)
    assert transport.started
    assert not client.initialized
    assert client.pending_requests == {1: "initialize"}


def test_list_tools_and_call_tool():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    assert client.list_tools(timeout=2) == [{"name": "calculate_sum"}]
    result = client.call_tool("calculate_sum", {"a": 5, "b": 3}, timeout=2)
    assert result == {"content": [{"type": "text", "text": "The sum of 5 and 3 is 8"}]}
    assert client.pending_requests == {}


def test_server_rejecting_version_closes_session():
    def reject(message):
        if message.get("method") == "initialize":
            return {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {
                    "code": -32001,
                    "message": "Unsupported protocol version: 2024-11-05",
                    "data": {"supportedVersions": ["2099-01-01"]},
                },
            }
        return None

    client, transport, errors = _connected(responder=reject)
    assert client.wait_until_initialized(2) is False
    assert wait_for(lambda: errors)
    assert isinstance(errors[0], ProtocolVersionError)
    assert errors[0].data == {"supportedVersions": ["2099-01-01"]}
    assert not client.initialized
    assert client.closed
    assert transport.closed
    assert "initialized" not in transport.sent_methods()


def test_version_rejection_without_id_is_still_fatal():
    transport = FakeTransport()
    client, errors = _client(), []
    client.on_error(errors.append)
    client.connect(transport)
    transport.deliver({
        "jsonrpc": "2.0",
        "error": {"code": -32001, "message": "Unsupported protocol version"},
    })
    assert isinstance(errors[0], ProtocolVersionError)
    assert client.closed and not client.initialized


def test_server_answering_unsupported_version_fails_handshake():
    def old_server(message):
        if message.get("method") == "initialize":
            return initialize_result(message["id"], version="2023-01-01")
        return None

    client, transport, errors = _connected(responder=old_server)
    assert client.wait_until_initialized(2) is False
    assert wait_for(lambda: errors)
    assert isinstance(errors[0], ProtocolVersionError)
    assert "2023-01-01" in str(errors[0])
    assert not client.initialized
    assert transport.closed
    assert "initialized" not in transport.sent_methods()


def test_initialize_error_reply_reaches_handlers():
    def failing(message):
        if message.get("method") == "initialize":
            return {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32603, "message": "boom"}}
        return None

    client, transport, errors = _connected(responder=failing)
    assert client.wait_until_initialized(2) is False
    assert isinstance(client.handshake_error, McpConnectionError)
    assert wait_for(lambda: errors)
    assert errors[0].code == -32603


def test_malformed_initialize_result_reaches_handlers():
    transport = FakeTransport()
    client, errors = _client(), []
    client.on_error(errors.append)
    client.connect(transport)
    transport.deliver({"jsonrpc": "2.0", "id": 1, "result": ["not", "an", "object"]})
    assert len(errors) == 1
    assert isinstance(errors[0], McpConnectionError)
    assert "Malformed initialize result" in str(errors[0])
    assert client.handshake_error is errors[0]
    assert client.wait_until_initialized(0.5) is False
    assert "initialized" not in transport.sent_methods()


def test_response_with_raw_newline_in_string():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    request_id = client.request("roots/list")
    transport.deliver('{"jsonrpc": "2.0", "id": %d, "result": {"text": "a\nb"}}' % request_id)
    assert client.response_for(request_id)["result"] == {"text": "a\nb"}
    assert errors == []


def test_explicit_zero_settings_are_kept():
    client = McpClient(name="c", version="1", request_timeout=0, poll_interval=0)
    assert client.request_timeout == 0
    assert client.poll_interval == 0
    assert McpClient(name="c", version="1").request_timeout == 30.0


def test_parse_error_goes_to_handlers_and_session_continues():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    transport.deliver("{this is not json")
    assert len(errors) == 1
    assert isinstance(errors[0], McpConnectionError)
    assert "Error parsing response" in str(errors[0])
    assert client.call_tool("calculate_sum", {"a": 1, "b": 2}, timeout=2)["content"][0]["text"] == (
        "The sum of 1 and 2 is 3"
    )


def test_errors_fall_back_to_log(caplog):
    transport = FakeTransport()
    client = _client()
    assert client.error_handlers == [log_error]
    client.connect(transport)
    with caplog.at_level(logging.ERROR, logger="mcp_stdio_tools.client"):
        transport.deliver("garbage")
    assert "MCP client error" in caplog.text


def test_handlers_run_in_order_and_failures_are_contained():
    transport = FakeTransport()
    client = _client()
    calls = []

    def broken(error):
        calls.append("broken")
        raise RuntimeError("handler bug")

    client.on_error(broken).on_error(lambda error: calls.append("second"))
    client.connect(transport)
    transport.deliver("garbage")
    assert calls == ["broken", "second"]


def test_transport_errors_are_forwarded():
    client, transport, errors = _connected()
    transport.emit_error(TransportError("Process stderr: warning"))
    assert isinstance(errors[0], McpConnectionError)
    assert "Process stderr: warning" in str(errors[0])


def test_call_tool_times_out_after_deadline():
    transport = FakeTransport()
    client = _client()
    client.connect(transport)
    started = time.monotonic()
    with pytest.raises(RequestTimeoutError):
        client.call_tool("anything", {}, timeout=0.3)
    elapsed = time.monotonic() - started
    assert 0.3 <= elapsed < 1.5
    assert 2 not in client.pending_requests


def test_timeout_is_distinct_from_tool_error():
    assert not issubclass(RequestTimeoutError, ToolError)
    assert issubclass(RequestTimeoutError, TimeoutError)


def test_tool_error_raised_for_error_response():
    def failing(message):
        if message.get("method") == "initialize":
            return initialize_result(message["id"])
        if message.get("method") == "tools/call":
            return {"jsonrpc": "2.0", "id": message["id"],
                    "error": {"code": -32000, "message": "Tool execution error: nope"}}
        return None

    client, transport, errors = _connected(responder=failing)
    client.wait_until_initialized(2)
    with pytest.raises(ToolError) as excinfo:
        client.call_tool("nope", {}, timeout=2)
    assert excinfo.value.code == -32000
    assert errors == []


def test_list_tools_error_raises_connection_error():
    def failing(message):
        if message.get("method") == "initialize":
            return initialize_result(message["id"])
        if message.get("method") == "tools/list":
            return {"jsonrpc": "2.0", "id": message["id"],
                    "error": {"code": -32601, "message": "Method not found: tools/list"}}
        return None

    client, transport, errors = _connected(responder=failing)
    client.wait_until_initialized(2)
    with pytest.raises(McpConnectionError):
        client.list_tools(timeout=2)


def test_concurrent_calls_matched_out_of_order():
    transport = FakeTransport()
    client = _client()
    client.connect(transport)
    transport.deliver(initialize_result(1))
    assert client.initialized

    count = 20
    results = {}

    def call(n):
        results[n] = client.call_tool("echo", {"n": n}, timeout=5)

    threads = [threading.Thread(target=call, args=(n,)) for n in range(count)]
    for thread in threads:
        thread.start()
    assert wait_for(lambda: len([m for m in transport.sent if m.get("method") == "tools/call"]) == count)

    calls = [m for m in transport.sent if m.get("method") == "tools/call"]
    random.Random(7).shuffle(calls)
    for message in calls:
        n = message["params"]["arguments"]["n"]
        transport.deliver({"jsonrpc": "2.0", "id": message["id"],
                           "result": {"content": [{"type": "text", "text": str(n)}]}})
    for thread in threads:
        thread.join(5)

    assert {n: r["content"][0]["text"] for n, r in results.items()} == {n: str(n) for n in range(count)}


def test_response_for_unknown_id_is_discarded():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    transport.deliver({"jsonrpc": "2.0", "id": 999, "result": {}})
    assert client.response_for(999) is None
    assert errors == []


def test_response_for_keeps_initialize_reply():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    assert client.response_for(1)["result"]["serverInfo"]["name"] == "X"


def test_unsolicited_error_with_id_reaches_handlers():
    transport = FakeTransport()
    client, errors = _client(), []
    client.on_error(errors.append)
    client.connect(transport)
    transport.deliver(initialize_result(1))
    request_id = client.request("roots/list")
    transport.deliver({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32603, "message": "broken"}})
    assert len(errors) == 1
    assert errors[0].code == -32603
    assert client.response_for(request_id)["error"]["message"] == "broken"


def test_error_without_id_reaches_handlers():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    transport.deliver({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}})
    assert len(errors) == 1
    assert "Parse error" in str(errors[0])


def test_server_request_gets_method_not_found():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    transport.deliver({"jsonrpc": "2.0", "id": "srv-1", "method": "sampling/createMessage", "params": {}})
    reply = [m for m in transport.sent if m.get("id") == "srv-1"][0]
    assert reply["error"]["code"] == -32601
    transport.deliver({"jsonrpc": "2.0", "method": "notifications/progress", "params": {}})
    assert errors == []


def test_close_is_idempotent():
    client, transport, errors = _connected()
    client.close()
    client.close()
    assert transport.close_calls == 1
    assert client.closed


def test_transport_close_closes_client():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    transport.close()
    assert client.closed
    assert transport.close_calls == 2


def test_failed_send_raises_transport_error():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    transport.refuse_sends = True
    with pytest.raises(TransportError):
        client.call_tool("calculate_sum", {"a": 1, "b": 1}, timeout=2)
    assert client.pending_requests == {}


def test_failed_initialize_send_reported():
    transport = FakeTransport(refuse_sends=True)
    client, errors = _client(), []
    client.on_error(errors.append)
    client.connect(transport)
    assert isinstance(errors[0], TransportError)


def test_call_before_connect_raises():
    with pytest.raises(McpConnectionError, match="not connected"):
        _client().list_tools(timeout=0.1)


def test_request_ids_increase():
    client, transport, errors = _connected()
    client.wait_until_initialized(2)
    first = client.request("tools/list")
    second = client.request("tools/list")
    assert second == first + 1
    assert json.loads(json.dumps(transport.sent[-1]))["id"] == second
