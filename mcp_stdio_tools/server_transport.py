"""
Server-side transports: feed incoming messages to an McpServer and write
its replies back.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from abc import ABC, abstractmethod
from typing import IO, Any

from mcp_stdio_tools.errors import INTERNAL_ERROR, PARSE_ERROR
from mcp_stdio_tools.transport import JsonRpcResponse

logger = logging.getLogger(__name__)


class ServerTransport(ABC):
    """Connects an McpServer to some message source."""

    def __init__(self, server):
        self.server = server
        server.attach(self)

    @abstractmethod
    def start(self) -> None:
        ...

    @abstractmethod
    def stop(self) -> None:
        ...

    @abstractmethod
    def send_message(self, message: dict[str, Any]) -> bool:
        ...

    def process_message(self, message: Any) -> None:
        self.server.process_message(message)


class StdioServerTransport(ServerTransport):
    """
    One JSON-RPC message per line on stdin, one reply per line on stdout.

    Lines that are not valid JSON get a parse-error reply (id null) and the
    loop carries on.
    """

    def __init__(self, server, stdin: IO[str] | None = None, stdout: IO[str] | None = None):
        super().__init__(server)
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self._write_lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """
        Main loop: read messages from stdin, dispatch, write replies to stdout.

        Blocks until stdin is closed, stop() is called, or Ctrl-C.
        """
        self._running = True
        logger.debug("Listening on stdin, writing to stdout")
        try:
            while self._running:
                line = self._stdin.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue

                try:
                    message = json.loads(line)
                except json.JSONDecodeError as e:
                    logger.warning(f"Parse error: {e}")
                    self.send_message(
                        JsonRpcResponse.failure(None, PARSE_ERROR, f"Parse error: {e}").to_dict()
                    )
                    continue

                self.process_message(message)
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self._running = False
        logger.debug("Stdio server transport stopped")

    def stop(self) -> None:
        self._running = False

    def send_message(self, message: dict[str, Any]) -> bool:
        """Write a JSON-RPC message to stdout."""
        try:
            data = json.dumps(message)
        except (TypeError, ValueError) as e:
            logger.error(f"Reply is not JSON serializable: {e}")
            data = json.dumps(JsonRpcResponse.failure(
                message.get("id"), INTERNAL_ERROR, f"Internal error: {e}"
            ).to_dict())

        with self._write_lock:
            try:
                self._stdout.write(data + "\n")
                self._stdout.flush()
            except (OSError, ValueError) as e:
                logger.error(f"Failed to write reply: {e}")
                return False
        return True
