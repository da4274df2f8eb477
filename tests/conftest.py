import json
import os
import sys
import threading
import time
from pathlib import Path

import pytest

from mcp_stdio_tools.transport import Transport

ROOT = Path(__file__).resolve().parents[1]
FIXTURES = ROOT / "tests" / "fixtures"


def child_env():
    """Environment for child Python processes so they can import the package."""
    pythonpath = os.environ.get("PYTHONPATH")
    return {"PYTHONPATH": str(ROOT) + (os.pathsep + pythonpath if pythonpath else "")}


def python_module(module, *args):
    return [sys.executable, "-u", "-m", module, *args]


def fixture_script(name, *args):
    return [sys.executable, "-u", str(FIXTURES / name), *args]


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeTransport(Transport):
    """
    In-process stand-in for StdioTransport.

    Sent frames are parsed and recorded; ``deliver`` pushes frames to the
    data subscribers as if they came from the child. ``responder`` (if set)
    is called for every sent message and any reply it returns is delivered
    from a separate thread.
    """

    def __init__(self, responder=None, refuse_sends=False):
        self.responder = responder
        self.refuse_sends = refuse_sends
        self.sent = []
        self.started = False
        self.closed = False
        self.close_calls = 0
        self._callbacks = {"data": [], "error": [], "close": []}
        self._lock = threading.Lock()

    def on_data(self, callback):
        self._callbacks["data"].append(callback)
        return self

    def on_error(self, callback):
        self._callbacks["error"].append(callback)
        return self

    def on_close(self, callback):
        self._callbacks["close"].append(callback)
        return self

    def start(self):
        self.started = True
        return self

    def is_alive(self):
        return self.started and not self.closed

    def send(self, frame):
        if self.closed or self.refuse_sends:
            return False
        message = json.loads(frame)
        with self._lock:
            self.sent.append(message)
        if self.responder is not None:
            reply = self.responder(message)
            if reply is not None:
                threading.Thread(target=self.deliver, args=(reply,), daemon=True).start()
        return True

    def close(self):
        with self._lock:
            self.close_calls += 1
            if self.closed:
                return
            self.closed = True
        for callback in list(self._callbacks["close"]):
            callback(None)

    def deliver(self, message):
        frame = message if isinstance(message, str) else json.dumps(message)
        for callback in list(self._callbacks["data"]):
            callback(frame)

    def emit_error(self, error):
        for callback in list(self._callbacks["error"]):
            callback(error)

    def sent_methods(self):
        with self._lock:
            return [m.get("method") for m in self.sent]

    def last_sent(self, method):
        with self._lock:
            matching = [m for m in self.sent if m.get("method") == method]
        return matching[-1] if matching else None


def initialize_result(request_id, version="2024-11-05", name="X", server_version="1"):
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "result": {
            "protocolVersion": version,
            "capabilities": {},
            "serverInfo": {"name": name, "version": server_version},
        },
    }


@pytest.fixture
def fake_transport():
    return FakeTransport()
