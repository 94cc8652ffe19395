"""
SQLite persistence for the MCP library, gateway membership and settings.

The gateway only reads backend records from here; membership edits come
from the CLI or REST management surfaces.

Database Schema:
    - mcps: library of MCP server definitions (command, args, env, url)
    - gateway_mcps: which library entries the gateway aggregates, with
      per-entry enabled / auto_restart flags and display order
    - app_settings: key/value settings (gateway_enabled, gateway_port, ...)

Usage:
    from mcp_gateway.store import GatewayStore

    store = GatewayStore("~/.mcp-gateway/gateway.db")
    store.init_schema()

    mcp_id = store.create_mcp("filesystem", command="npx", args=["-y", "server-fs"])
    store.add_gateway_backend(mcp_id)
    records = store.get_enabled_gateway_backends()
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path

from mcp_gateway.config import DEFAULT_GATEWAY_PORT, GatewayConfig
from mcp_gateway.exceptions import NotFoundError

logger = logging.getLogger(__name__)

# Library entry the gateway registers for itself. Never connected as a backend.
GATEWAY_ENTRY_NAME = "MCP Gateway"
GATEWAY_ENTRY_SOURCE = "system"

GATEWAY_SCHEMA = """
CREATE TABLE IF NOT EXISTS mcps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT,
    type TEXT NOT NULL DEFAULT 'stdio',     -- stdio | http | sse | streamable-http
    command TEXT,
    args TEXT,                              -- JSON array
    url TEXT,
    env TEXT,                               -- JSON object
    source TEXT NOT NULL DEFAULT 'manual',  -- manual | system | imported
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS gateway_mcps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mcp_id INTEGER NOT NULL UNIQUE,
    is_enabled INTEGER DEFAULT 1,
    auto_restart INTEGER DEFAULT 1,
    display_order INTEGER DEFAULT 0,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (mcp_id) REFERENCES mcps(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_gateway_mcps_mcp ON gateway_mcps(mcp_id);
CREATE INDEX IF NOT EXISTS idx_gateway_mcps_enabled ON gateway_mcps(is_enabled);

CREATE TABLE IF NOT EXISTS app_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

INSERT OR IGNORE INTO app_settings (key, value) VALUES ('gateway_enabled', 'false');
INSERT OR IGNORE INTO app_settings (key, value) VALUES ('gateway_port', '{port}');
INSERT OR IGNORE INTO app_settings (key, value) VALUES ('gateway_auto_start', 'false');
""".format(port=DEFAULT_GATEWAY_PORT)

_BACKEND_SELECT = """
SELECT m.id, m.name, m.type, m.command, m.args, m.env, m.url, m.source,
       gm.is_enabled, gm.auto_restart
FROM gateway_mcps gm
JOIN mcps m ON gm.mcp_id = m.id
"""


@dataclass
class BackendRecord:
    """One gateway member as read from persistence. ``id`` is the MCP id."""

    id: int
    name: str
    transport_type: str = "stdio"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    enabled: bool = True
    auto_restart: bool = True
    source: str = "manual"
    url: str | None = None

    @property
    def is_gateway_entry(self) -> bool:
        return self.source == GATEWAY_ENTRY_SOURCE and self.name == GATEWAY_ENTRY_NAME

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.transport_type,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env) if self.env else None,
            "url": self.url,
            "enabled": self.enabled,
            "auto_restart": self.auto_restart,
            "source": self.source,
        }


def _load_json(value: str | None, default):
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value: %r", value[:80])
        return default


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


class GatewayStore:
    """Interface to the gateway SQLite database."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def close(self):
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def init_schema(self):
        """Create tables and default settings if missing."""
        with self._lock:
            conn = self.connect()
            conn.executescript(GATEWAY_SCHEMA)
            conn.commit()

    # ------------------------------------------------------------------
    # MCP library
    # ------------------------------------------------------------------

    def create_mcp(
        self,
        name: str,
        *,
        transport_type: str = "stdio",
        command: str | None = None,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        url: str | None = None,
        description: str | None = None,
        source: str = "manual",
    ) -> int:
        """Insert a library entry and return its id."""
        with self._lock:
            conn = self.connect()
            cursor = conn.execute(
                "INSERT INTO mcps (name, description, type, command, args, url, env, source) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    name,
                    description,
                    transport_type,
                    command,
                    json.dumps(args) if args is not None else None,
                    url,
                    json.dumps(env) if env is not None else None,
                    source,
                ),
            )
            conn.commit()
            return cursor.lastrowid

    def get_mcp(self, mcp_id: int) -> dict | None:
        with self._lock:
            row = self.connect().execute(
                "SELECT * FROM mcps WHERE id = ?", (mcp_id,)
            ).fetchone()
        return dict(row) if row else None

    def get_mcp_by_name(self, name: str) -> dict | None:
        with self._lock:
            row = self.connect().execute(
                "SELECT * FROM mcps WHERE name = ?", (name,)
            ).fetchone()
        return dict(row) if row else None

    def register_gateway_entry(self, port: int) -> int:
        """Add or refresh the gateway's own library entry so other tools can find it."""
        url = f"http://127.0.0.1:{port}/mcp"
        existing = self.get_mcp_by_name(GATEWAY_ENTRY_NAME)
        if existing is None:
            logger.info("Registering %s in library at %s", GATEWAY_ENTRY_NAME, url)
            return self.create_mcp(
                GATEWAY_ENTRY_NAME,
                transport_type="http",
                url=url,
                description=(
                    "Aggregates multiple MCP servers into a single endpoint. "
                    "Tool names are prefixed with their source MCP "
                    "(e.g., 'filesystem__read_file')."
                ),
                source=GATEWAY_ENTRY_SOURCE,
            )
        with self._lock:
            conn = self.connect()
            conn.execute(
                "UPDATE mcps SET url = ?, type = 'http', source = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (url, GATEWAY_ENTRY_SOURCE, existing["id"]),
            )
            conn.commit()
        return existing["id"]

    # ------------------------------------------------------------------
    # Gateway membership
    # ------------------------------------------------------------------

    def _row_to_record(self, row: sqlite3.Row) -> BackendRecord:
        return BackendRecord(
            id=row["id"],
            name=row["name"],
            transport_type=row["type"] or "stdio",
            command=row["command"],
            args=_load_json(row["args"], []),
            env=_load_json(row["env"], None),
            enabled=bool(row["is_enabled"]),
            auto_restart=bool(row["auto_restart"]),
            source=row["source"],
            url=row["url"],
        )

    def get_gateway_backends(self) -> list[BackendRecord]:
        """All gateway members, including disabled ones."""
        with self._lock:
            rows = self.connect().execute(
                _BACKEND_SELECT + " ORDER BY gm.display_order, m.name"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_enabled_gateway_backends(self) -> list[BackendRecord]:
        with self._lock:
            rows = self.connect().execute(
                _BACKEND_SELECT + " WHERE gm.is_enabled = 1 ORDER BY gm.display_order, m.name"
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_gateway_backend(self, mcp_id: int) -> BackendRecord:
        """Return one member record.

        Raises:
            NotFoundError: If the MCP is not a gateway member.
        """
        with self._lock:
            row = self.connect().execute(
                _BACKEND_SELECT + " WHERE gm.mcp_id = ?", (mcp_id,)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"MCP {mcp_id} not found in gateway")
        return self._row_to_record(row)

    def add_gateway_backend(self, mcp_id: int) -> None:
        with self._lock:
            conn = self.connect()
            if conn.execute("SELECT 1 FROM mcps WHERE id = ?", (mcp_id,)).fetchone() is None:
                raise NotFoundError(f"MCP {mcp_id} does not exist")
            conn.execute(
                "INSERT OR IGNORE INTO gateway_mcps (mcp_id) VALUES (?)", (mcp_id,)
            )
            conn.commit()

    def remove_gateway_backend(self, mcp_id: int) -> None:
        self._update_member("DELETE FROM gateway_mcps WHERE mcp_id = ?", (mcp_id,), mcp_id)

    def toggle_gateway_backend(self, mcp_id: int, enabled: bool) -> None:
        self._update_member(
            "UPDATE gateway_mcps SET is_enabled = ? WHERE mcp_id = ?",
            (1 if enabled else 0, mcp_id),
            mcp_id,
        )

    def set_gateway_backend_auto_restart(self, mcp_id: int, auto_restart: bool) -> None:
        self._update_member(
            "UPDATE gateway_mcps SET auto_restart = ? WHERE mcp_id = ?",
            (1 if auto_restart else 0, mcp_id),
            mcp_id,
        )

    def _update_member(self, query: str, params: tuple, mcp_id: int) -> None:
        with self._lock:
            conn = self.connect()
            cursor = conn.execute(query, params)
            conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"MCP {mcp_id} not found in gateway")

    def is_in_gateway(self, mcp_id: int) -> bool:
        with self._lock:
            count = self.connect().execute(
                "SELECT COUNT(*) FROM gateway_mcps WHERE mcp_id = ?", (mcp_id,)
            ).fetchone()[0]
        return count > 0

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str) -> str | None:
        with self._lock:
            row = self.connect().execute(
                "SELECT value FROM app_settings WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self._lock:
            conn = self.connect()
            conn.execute(
                "INSERT INTO app_settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )
            conn.commit()

    def load_gateway_config(self) -> GatewayConfig:
        """Read persisted gateway settings, falling back to defaults for bad values."""
        port_raw = self.get_setting("gateway_port")
        try:
            port = int(port_raw) if port_raw is not None else DEFAULT_GATEWAY_PORT
            if not 1 <= port <= 65535:
                raise ValueError(f"port out of range: {port}")
        except ValueError:
            logger.warning("Invalid stored gateway_port %r, using default", port_raw)
            port = DEFAULT_GATEWAY_PORT
        return GatewayConfig(
            enabled=_parse_bool(self.get_setting("gateway_enabled"), False),
            port=port,
            auto_start=_parse_bool(self.get_setting("gateway_auto_start"), False),
        )

    def save_gateway_config(self, config: GatewayConfig) -> None:
        self.set_setting("gateway_enabled", str(config.enabled).lower())
        self.set_setting("gateway_port", str(config.port))
        self.set_setting("gateway_auto_start", str(config.auto_start).lower())
