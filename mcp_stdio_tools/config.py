"""
Runtime settings for transports and clients.

Defaults can be overridden from the environment:

    MCP_STDIO_CLOSE_GRACE        seconds to wait for a child to exit after stdin closes
    MCP_STDIO_TERMINATE_GRACE    seconds to wait after SIGTERM before SIGKILL
    MCP_STDIO_READ_CHUNK         bytes read from the child's stdout per call
    MCP_STDIO_MAX_FRAME          largest buffered frame in bytes
    MCP_STDIO_REQUEST_TIMEOUT    default deadline for blocking client calls
    MCP_STDIO_POLL_INTERVAL      how often a waiting call rechecks its response slot
    MCP_STDIO_HANDSHAKE_TIMEOUT  how long callers wait for initialize to complete
    MCP_STDIO_LOG_LEVEL          log level used by configure_logging()
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Callable, Mapping

DEFAULT_MAX_FRAME_SIZE = 8 * 1024 * 1024

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _read_env(
    env: Mapping[str, str],
    name: str,
    default,
    cast: Callable[[str], object],
):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a {cast.__name__}, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass
class TransportConfig:
    """Timing and buffering limits for a StdioTransport."""

    close_grace_period: float = 2.0
    terminate_grace_period: float = 1.0
    read_chunk_size: int = 4096
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "TransportConfig":
        env = os.environ if env is None else env
        return cls(
            close_grace_period=_read_env(env, "MCP_STDIO_CLOSE_GRACE", cls.close_grace_period, float),
            terminate_grace_period=_read_env(
                env, "MCP_STDIO_TERMINATE_GRACE", cls.terminate_grace_period, float
            ),
            read_chunk_size=_read_env(env, "MCP_STDIO_READ_CHUNK", cls.read_chunk_size, int),
            max_frame_size=_read_env(env, "MCP_STDIO_MAX_FRAME", cls.max_frame_size, int),
        )


@dataclass
class ClientConfig:
    """Deadlines used by McpClient blocking calls."""

    request_timeout: float = 30.0
    poll_interval: float = 0.1
    handshake_timeout: float = 10.0

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ClientConfig":
        env = os.environ if env is None else env
        return cls(
            request_timeout=_read_env(env, "MCP_STDIO_REQUEST_TIMEOUT", cls.request_timeout, float),
            poll_interval=_read_env(env, "MCP_STDIO_POLL_INTERVAL", cls.poll_interval, float),
            handshake_timeout=_read_env(
                env, "MCP_STDIO_HANDSHAKE_TIMEOUT", cls.handshake_timeout, float
            ),
        )


def configure_logging(level: str | int | None = None) -> None:
    """
    Send log records to stderr.

    Tool server processes call this before serving: stdout carries the
    JSON-RPC stream, so nothing else may be written there.
    """
    if level is None:
        level = os.environ.get("MCP_STDIO_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(stream=sys.stderr, level=level, format=LOG_FORMAT)
