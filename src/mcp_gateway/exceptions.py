"""MCP gateway exceptions."""


class GatewayError(Exception):
    """Base exception for mcp-gateway."""


class ConfigError(GatewayError):
    """Configuration or persistence access failed."""


class BindError(GatewayError):
    """The listening port could not be bound."""


class BackendConnectError(GatewayError):
    """A backend could not be spawned, initialized or reached."""


class UnsupportedTransportError(BackendConnectError):
    """The backend's transport type cannot be proxied by the gateway."""


class UnknownBackendError(GatewayError):
    """No backend with the requested name is configured."""


class UnknownToolError(GatewayError):
    """The requested tool is not in the tool index or backend catalog."""


class NotConnectedError(GatewayError):
    """The owning backend is not currently connected."""


class AlreadyRunningError(GatewayError):
    """start() was called on a running gateway."""


class NotRunningError(GatewayError):
    """stop() was called on a gateway that is not running."""


class NotFoundError(GatewayError):
    """The backend id is not a gateway member."""
