"""Gateway settings and YAML process config with environment variable interpolation."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path

import yaml

from mcp_gateway.exceptions import ConfigError

logger = logging.getLogger(__name__)

# Default port for the MCP gateway
DEFAULT_GATEWAY_PORT = 23848

DEFAULT_DB_PATH = Path.home() / ".mcp-gateway" / "gateway.db"

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class GatewayConfig:
    """User-facing gateway settings. Replaced as a whole, never field by field."""

    enabled: bool = False
    port: int = DEFAULT_GATEWAY_PORT
    auto_start: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> GatewayConfig:
        """Build a config from a mapping, falling back to defaults for absent keys.

        Raises:
            ConfigError: If a value has the wrong type or the port is out of range.
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Gateway config must be a mapping, got {type(data).__name__}")

        defaults = cls()
        enabled = data.get("enabled", defaults.enabled)
        port = data.get("port", defaults.port)
        auto_start = data.get("auto_start", defaults.auto_start)

        for key, value in (("enabled", enabled), ("auto_start", auto_start)):
            if not isinstance(value, bool):
                raise ConfigError(f"Gateway config {key!r} must be a boolean, got {value!r}")
        # bool is an int subclass; reject it explicitly
        if isinstance(port, bool) or not isinstance(port, int):
            raise ConfigError(f"Gateway config 'port' must be an integer, got {port!r}")
        if not 1 <= port <= 65535:
            raise ConfigError(f"Gateway config 'port' out of range: {port}")

        return cls(enabled=enabled, port=port, auto_start=auto_start)

    def to_dict(self) -> dict:
        return asdict(self)


def _interpolate_env(value: str) -> str:
    """Replace ${VAR} patterns with environment variable values.

    If a referenced variable is not set, the placeholder is replaced with
    an empty string to prevent literal '${VAR}' from leaking into commands.
    """

    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _walk_and_interpolate(obj):
    """Recursively walk a parsed YAML structure and interpolate strings."""
    if isinstance(obj, str):
        return _interpolate_env(obj)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item) for item in obj]
    return obj


def load_config(path: str) -> dict:
    """Load a YAML config file with env var interpolation.

    Args:
        path: Path to the YAML config file.

    Returns:
        Parsed and interpolated config dict.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the top level is not a mapping.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("Invalid YAML in config file %s: %s", path, e)
        raise
    except OSError as e:
        logger.error("Cannot read config file %s: %s", path, e)
        raise

    if raw is None:
        return {}

    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a YAML mapping, got {type(raw).__name__}: {path}")

    return _walk_and_interpolate(raw)


def resolve_gateway_config(
    stored: GatewayConfig,
    file_config: dict,
    port_override: int | None = None,
) -> GatewayConfig:
    """Layer the YAML ``gateway:`` section and a CLI port over stored settings."""
    merged = stored.to_dict()
    section = file_config.get("gateway") or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config 'gateway' key must be a mapping, got {type(section).__name__}")
    for key in ("enabled", "port", "auto_start"):
        if key in section:
            merged[key] = section[key]
    if port_override is not None:
        merged["port"] = port_override
    return GatewayConfig.from_dict(merged)
