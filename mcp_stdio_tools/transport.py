"""
Transport layer for MCP tool communication.

Implements:
  - JsonRpcRequest / JsonRpcResponse: JSON-RPC 2.0 envelopes
  - FrameDecoder: turns an arbitrary byte stream into complete JSON frames
  - StdioTransport: owns one child process and talks to it over its pipes

StdioTransport is event driven. Three daemon threads run per process:

    stdout reader  ── bytes ─► FrameDecoder ─► on_data(frame)
    stderr reader  ── one line ─────────────► on_error(TransportError)
    exit monitor   ── process exited ───────► on_close(exit_status)

Callbacks fire on those threads, in registration order.
"""

from __future__ import annotations

import codecs
import json
import logging
import os
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_stdio_tools.config import TransportConfig
from mcp_stdio_tools.errors import FrameTooLargeError, TransportError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
LATEST_PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = (LATEST_PROTOCOL_VERSION,)


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request, or a notification when ``id`` is None."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: int | str | None = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION}
        if self.id is not None:
            message["id"] = self.id
        message["method"] = self.method
        message["params"] = self.params
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response. Exactly one of result/error is sent."""
    id: int | str | None
    result: Any = None
    error: dict | None = None

    @classmethod
    def from_dict(cls, parsed: dict[str, Any]) -> "JsonRpcResponse":
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
        )

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        return cls.from_dict(json.loads(data))

    @classmethod
    def failure(
        cls, id: int | str | None, code: int, message: str, data: Any = None
    ) -> "JsonRpcResponse":
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return cls(id=id, error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error
        else:
            message["result"] = {} if self.result is None else self.result
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class FrameDecoder:
    """
    Incremental newline-delimited JSON framer.

    Bytes are decoded as UTF-8 incrementally, so a multi-byte character split
    across two chunks is reassembled. Text is split at line separators; a
    segment that does not parse as JSON is kept and extended to the next
    separator when more input arrives, which lets a document span several
    lines. Blank lines between documents are skipped. Raw control characters
    inside string values (a literal newline, say) are accepted.
    """

    def __init__(self, max_frame_size: int = TransportConfig.max_frame_size):
        self.max_frame_size = max_frame_size
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        # Separators before this offset already failed to close a frame.
        self._scan_from = 0

    @property
    def buffered(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """
        Add a chunk and return every frame completed by it, in order.

        Raises FrameTooLargeError (after discarding the buffer) when the
        pending text exceeds ``max_frame_size``; frames completed before the
        overflow are attached to it as ``error.frames``.
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk

        frames = []
        while True:
            end = self._buffer.find("\n", self._scan_from)
            if end == -1:
                break
            candidate = self._buffer[:end].strip()
            if not candidate:
                self._consume(end + 1)
                continue
            try:
                json.loads(candidate, strict=False)
            except ValueError:
                self._scan_from = end + 1
                continue
            frames.append(candidate)
            self._consume(end + 1)

        if len(self._buffer) > self.max_frame_size:
            size = len(self._buffer)
            self.reset()
            raise FrameTooLargeError(
                f"Discarded {size} characters of unparseable input "
                f"(limit {self.max_frame_size})",
                frames=frames,
            )
        return frames

    def reset(self) -> None:
        self._buffer = ""
        self._scan_from = 0

    def _consume(self, count: int) -> None:
        self._buffer = self._buffer[count:]
        self._scan_from = 0


DataCallback = Callable[[str], None]
ErrorCallback = Callable[[Exception], None]
CloseCallback = Callable[["int | None"], None]


class Transport(ABC):
    """Abstract client-side transport for MCP communication."""

    @abstractmethod
    def start(self) -> "Transport":
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    def send(self, frame: str) -> bool:
        """Write one frame. Returns False instead of raising on failure."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Stop the transport (e.g., terminate subprocess)."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...

    @abstractmethod
    def on_data(self, callback: DataCallback) -> "Transport":
        ...

    @abstractmethod
    def on_error(self, callback: ErrorCallback) -> "Transport":
        ...

    @abstractmethod
    def on_close(self, callback: CloseCallback) -> "Transport":
        ...

    def stop(self) -> None:
        self.close()


class StdioTransport(Transport):
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    This is MCP's native local transport. The tool server runs as
    a child process. We write one JSON document per line to its stdin and
    deliver each complete document read from its stdout to on_data
    subscribers.
    """

    def __init__(
        self,
        command: list[str] | str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | os.PathLike | None = None,
        config: TransportConfig | None = None,
    ):
        """
        Args:
            command: Executable, or a full argv list.
                     e.g., [sys.executable, "-m", "mcp_stdio_tools.servers.calculator"]
            args: Extra arguments appended to ``command``.
            env: Variables layered over the caller's environment.
            cwd: Working directory for the child process.
            config: Grace periods and buffer limits.
        """
        argv = [command] if isinstance(command, str) else list(command)
        self.command = argv + list(args or [])
        self.env = env
        self.cwd = cwd
        self.config = config or TransportConfig()

        self._process: subprocess.Popen | None = None
        self._decoder = FrameDecoder(self.config.max_frame_size)
        self._callbacks: dict[str, list[Callable]] = {"data": [], "error": [], "close": []}
        # Guards the callback registry and lifecycle flags; never held across I/O.
        self._lock = threading.Lock()
        # Serializes writes to the child's stdin.
        self._write_lock = threading.Lock()
        self._closing = False
        self._exited = False
        self._close_emitted = False
        self._close_delivered = threading.Event()
        self._monitor: threading.Thread | None = None
        self._readers: list[threading.Thread] = []

    # -- event registration -------------------------------------------------

    def on_data(self, callback: DataCallback) -> "StdioTransport":
        return self._subscribe("data", callback)

    def on_error(self, callback: ErrorCallback) -> "StdioTransport":
        return self._subscribe("error", callback)

    def on_close(self, callback: CloseCallback) -> "StdioTransport":
        return self._subscribe("close", callback)

    def _subscribe(self, event: str, callback: Callable) -> "StdioTransport":
        with self._lock:
            self._callbacks[event].append(callback)
        return self

    # -- lifecycle ----------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def start(self) -> "StdioTransport":
        """Launch the tool server subprocess and its reader threads."""
        with self._lock:
            if self._process is not None:
                raise TransportError("StdioTransport already started")
            env = dict(os.environ)
            if self.env:
                env.update(self.env)

            logger.info(f"Starting stdio transport: {' '.join(self.command)}")
            try:
                self._process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=env,
                    cwd=self.cwd,
                )
            except OSError as e:
                raise TransportError(f"Failed to start {self.command[0]}: {e}") from e

        process = self._process
        self._readers = [
            self._spawn(f"stdout-{process.pid}", self._read_stdout, process),
            self._spawn(f"stderr-{process.pid}", self._read_stderr, process),
        ]
        self._monitor = self._spawn(f"monitor-{process.pid}", self._monitor_exit, process)
        return self

    def _spawn(self, name: str, target: Callable, process: subprocess.Popen) -> threading.Thread:
        thread = threading.Thread(
            target=target, args=(process,), name=f"mcp-stdio-{name}", daemon=True
        )
        thread.start()
        return thread

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        process = self._process
        return (
            process is not None
            and not (self._closing or self._exited)
            and process.poll() is None
        )

    def send(self, frame: str) -> bool:
        """Write one frame to the child's stdin, newline-terminated."""
        process = self._process
        if process is None or self._closing or self._exited:
            logger.debug("Dropping frame: transport is not running")
            return False
        if not frame.endswith("\n"):
            frame += "\n"

        with self._write_lock:
            if self._closing:
                return False
            try:
                process.stdin.write(frame.encode("utf-8"))
                process.stdin.flush()
            except (OSError, ValueError) as e:
                self._emit_error(TransportError(f"Failed to write to process: {e}"))
                return False
        return True

    def close(self) -> None:
        """
        Shut the child down: close stdin, wait, then SIGTERM, then SIGKILL.

        Safe to call more than once and from any callback thread; only the
        first call does the work.
        """
        with self._lock:
            process = self._process
            if process is None or self._closing:
                return
            self._closing = True

        with self._write_lock:
            try:
                process.stdin.close()
            except (OSError, ValueError):
                pass

        try:
            process.wait(timeout=self.config.close_grace_period)
        except subprocess.TimeoutExpired:
            logger.info(f"Process {process.pid} still running, sending SIGTERM")
            process.terminate()
            try:
                process.wait(timeout=self.config.terminate_grace_period)
            except subprocess.TimeoutExpired:
                logger.warning(f"Process {process.pid} ignored SIGTERM, killing")
                process.kill()
                process.wait()

        current = threading.current_thread()
        for thread in self._readers:
            if thread is not current:
                thread.join(timeout=self.config.terminate_grace_period)

        for stream in (process.stdout, process.stderr):
            try:
                stream.close()
            except (OSError, ValueError):
                pass

        logger.info(f"Stdio transport stopped (exit status {process.returncode})")
        self._emit_close(process.returncode)
        # The monitor may be mid-delivery; a close() issued from inside that
        # delivery must not wait on itself.
        if current is not self._monitor:
            self._close_delivered.wait(timeout=self.config.terminate_grace_period)

    # -- background workers -------------------------------------------------

    def _read_stdout(self, process: subprocess.Popen) -> None:
        stream = process.stdout
        while True:
            try:
                chunk = stream.read1(self.config.read_chunk_size)
            except (OSError, ValueError) as e:
                if not self._closing:
                    self._emit_error(TransportError(f"Failed to read from process: {e}"))
                return
            if not chunk:
                return

            overflow = None
            try:
                frames = self._decode(chunk)
            except FrameTooLargeError as e:
                frames, overflow = e.frames, e
            for frame in frames:
                logger.debug(f"Received frame: {frame[:200]}")
                self._emit("data", frame)
            if overflow is not None:
                self._emit_error(overflow)

    def _decode(self, chunk: bytes) -> list[str]:
        with self._lock:
            return self._decoder.feed(chunk)

    def _read_stderr(self, process: subprocess.Popen) -> None:
        try:
            for raw in iter(process.stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line:
                    self._emit_error(TransportError(f"Process stderr: {line}"))
        except (OSError, ValueError) as e:
            if not self._closing:
                self._emit_error(TransportError(f"Failed to read process stderr: {e}"))

    def _monitor_exit(self, process: subprocess.Popen) -> None:
        try:
            exit_status = process.wait()
        except ChildProcessError:
            # Already reaped by close().
            exit_status = process.returncode
        self._exited = True
        if not self._closing:
            logger.info(f"Process {process.pid} exited with status {exit_status}")
        self._emit_close(exit_status)

    # -- dispatch -----------------------------------------------------------

    def _emit_error(self, error: Exception) -> None:
        self._emit("error", error)

    def _emit_close(self, exit_status: int | None) -> None:
        with self._lock:
            if self._close_emitted:
                return
            self._close_emitted = True
        try:
            self._emit("close", exit_status)
        finally:
            self._close_delivered.set()

    def _emit(self, event: str, payload: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks[event])
        for callback in callbacks:
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Transport {event} callback failed")
