"""Backend MCP client implementations."""

import logging
import shutil
from enum import Enum

from mcp_gateway.backends.base import BackendClient
from mcp_gateway.backends.stdio_backend import DEFAULT_START_TIMEOUT, StdioBackendClient
from mcp_gateway.exceptions import BackendConnectError, UnsupportedTransportError

logger = logging.getLogger(__name__)

UNSUPPORTED_TRANSPORT_MESSAGE = "Only stdio MCPs are supported for gateway proxying"


class TransportType(str, Enum):
    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"
    STREAMABLE_HTTP = "streamable-http"


def _build_stdio(record, timeout: float) -> BackendClient:
    if not record.command:
        raise BackendConnectError("STDIO MCP requires a command")
    # Warn (don't fail) if command not found on PATH; spawning reports the real error
    if shutil.which(record.command) is None:
        logger.warning("Backend %s: command %r not found on PATH", record.name, record.command)
    return StdioBackendClient(
        record.name,
        record.command,
        args=record.args,
        env=record.env,
        start_timeout=timeout,
    )


# Transports the gateway can aggregate. Adding one means adding an entry here.
_CLIENT_BUILDERS = {
    TransportType.STDIO: _build_stdio,
}


def transport_of(record) -> TransportType | None:
    """Parse a record's declared transport, or None if it is not a known kind."""
    try:
        return TransportType(record.transport_type)
    except ValueError:
        return None


def is_supported(record) -> bool:
    """Whether the gateway has a client implementation for the record's transport."""
    return transport_of(record) in _CLIENT_BUILDERS


def create_client(record, timeout: float = DEFAULT_START_TIMEOUT) -> BackendClient:
    """Factory: build an unstarted client for a backend record.

    Raises:
        UnsupportedTransportError: If the transport has no gateway implementation.
        BackendConnectError: If the record is missing required fields.
    """
    builder = _CLIENT_BUILDERS.get(transport_of(record))
    if builder is None:
        raise UnsupportedTransportError(UNSUPPORTED_TRANSPORT_MESSAGE)
    return builder(record, timeout)


async def spawn_client(record, timeout: float = DEFAULT_START_TIMEOUT) -> BackendClient:
    """Create and start a client: spawn, MCP handshake, tool catalog.

    Raises:
        BackendConnectError: On any spawn, handshake or catalog failure.
    """
    client = create_client(record, timeout)
    await client.start()
    return client


__all__ = [
    "BackendClient",
    "StdioBackendClient",
    "TransportType",
    "UNSUPPORTED_TRANSPORT_MESSAGE",
    "create_client",
    "is_supported",
    "spawn_client",
    "transport_of",
]
