"""Operational logging for the MCP gateway.

Structured JSON logging to stderr and optionally to ~/.mcp-gateway/logs/.
Gateway modules attach the backend and tool a record is about with
``extra={"backend": ..., "tool": ...}``; both formatters surface those
fields so one backend's connects and calls can be followed in the log.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

LOG_DIR = Path.home() / ".mcp-gateway" / "logs"

# LogRecord attributes set through ``extra=`` by the gateway modules
CONTEXT_FIELDS = ("backend", "tool", "meta_tool")


def _context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: getattr(record, key)
        for key in CONTEXT_FIELDS
        if getattr(record, key, None) is not None
    }


class _StructuredFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, service_name: str = "mcp-gateway") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        log_data.update(_context(record))
        if record.levelno >= logging.WARNING:
            log_data["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info and record.exc_info[0]:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
            }
        return json.dumps(log_data, default=str)


class _TextFormatter(logging.Formatter):
    """Plain text with the backend/tool context appended in brackets."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


def setup_logging(
    service_name: str = "mcp-gateway",
    *,
    level: int = logging.INFO,
    json_format: bool | None = None,
    log_to_file: bool | None = None,
) -> None:
    """Configure operational logging for the ``mcp_gateway`` package logger.

    Args:
        service_name: Service name for log entries and the log file name.
        level: Logging level.
        json_format: Use JSON formatting. If None, checks MCP_GATEWAY_LOG_FORMAT
            env var (default: "json"). Set to "text" for plain text.
        log_to_file: Write to ~/.mcp-gateway/logs/{service_name}.jsonl. If None,
            checks MCP_GATEWAY_LOG_FILE env var (default: "true").
    """
    if json_format is None:
        json_format = os.environ.get("MCP_GATEWAY_LOG_FORMAT", "json").lower() != "text"
    if log_to_file is None:
        log_to_file = os.environ.get("MCP_GATEWAY_LOG_FILE", "true").lower() in (
            "true",
            "1",
            "yes",
        )

    pkg_logger = logging.getLogger("mcp_gateway")
    pkg_logger.setLevel(level)
    pkg_logger.handlers.clear()

    formatter: logging.Formatter
    if json_format:
        formatter = _StructuredFormatter(service_name)
    else:
        formatter = _TextFormatter()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    pkg_logger.addHandler(stderr_handler)

    if log_to_file:
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(
                LOG_DIR / f"{service_name}.jsonl",
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            # The file is always JSON lines, whatever the stderr format
            file_handler.setFormatter(_StructuredFormatter(service_name))
            pkg_logger.addHandler(file_handler)
        except OSError as exc:
            pkg_logger.warning(
                "Failed to set up file logging to %s: %s: %s",
                LOG_DIR,
                type(exc).__name__,
                exc,
            )

    pkg_logger.propagate = False
