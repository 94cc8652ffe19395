"""Entry point for mcp-gateway."""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sqlite3
import sys
from pathlib import Path

import yaml

from mcp_gateway.config import (
    DEFAULT_DB_PATH,
    GatewayConfig,
    load_config,
    resolve_gateway_config,
)
from mcp_gateway.exceptions import GatewayError
from mcp_gateway.oplog import setup_logging
from mcp_gateway.server import GatewayServerState
from mcp_gateway.store import GatewayStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".mcp-gateway" / "gateway.yaml"


class _CLIError(Exception):
    """Message printed as ``ERROR:`` before exiting with status 1."""


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config file (default: {DEFAULT_CONFIG_PATH} if present)",
    )
    common.add_argument(
        "--db",
        default=None,
        help=f"Path to the SQLite database (default: {DEFAULT_DB_PATH})",
    )

    parser = argparse.ArgumentParser(
        prog="mcp-gateway",
        description="MCP Gateway: aggregate stdio MCP servers behind one endpoint",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", parents=[common], help="Run the gateway until interrupted")
    serve.add_argument("--port", type=int, default=None, help="Bind port (overrides config)")
    serve.add_argument(
        "--auto",
        action="store_true",
        help="Only serve if the gateway is enabled with auto-start on",
    )

    sub.add_parser("status", parents=[common], help="Print config and backend membership")

    conn = sub.add_parser(
        "connection-config", parents=[common], help="Print the client connection snippet"
    )
    conn.add_argument("--port", type=int, default=None, help="Port to advertise")

    backends = sub.add_parser("backends", help="Manage gateway backend membership")
    backend_sub = backends.add_subparsers(dest="backend_command", required=True)

    backend_sub.add_parser("list", parents=[common], help="List gateway backends")

    add = backend_sub.add_parser("add", parents=[common], help="Add an MCP to the gateway")
    add.add_argument("name", help="MCP name; created in the library if unknown")
    add.add_argument("--command", dest="mcp_command", default=None, help="Executable to spawn")
    add.add_argument(
        "--arg", dest="mcp_args", action="append", default=[], help="Argument (repeatable)"
    )
    add.add_argument(
        "--env", dest="mcp_env", action="append", default=[], help="KEY=VALUE (repeatable)"
    )
    add.add_argument("--type", dest="transport_type", default="stdio", help="Transport type")

    for action, help_text in (
        ("remove", "Remove an MCP from the gateway"),
        ("enable", "Enable a gateway backend"),
        ("disable", "Disable a gateway backend"),
    ):
        p = backend_sub.add_parser(action, parents=[common], help=help_text)
        p.add_argument("backend", help="MCP id or name")

    auto = backend_sub.add_parser(
        "auto-restart", parents=[common], help="Set a backend's auto-restart flag"
    )
    auto.add_argument("backend", help="MCP id or name")
    auto.add_argument("value", choices=["on", "off"])

    config = sub.add_parser("config", help="Gateway settings")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_set = config_sub.add_parser("set", parents=[common], help="Update stored settings")
    enabled = config_set.add_mutually_exclusive_group()
    enabled.add_argument("--enabled", dest="enabled", action="store_true", default=None)
    enabled.add_argument("--disabled", dest="enabled", action="store_false")
    config_set.add_argument("--port", type=int, default=None)
    auto_start = config_set.add_mutually_exclusive_group()
    auto_start.add_argument("--auto-start", dest="auto_start", action="store_true", default=None)
    auto_start.add_argument("--no-auto-start", dest="auto_start", action="store_false")

    return parser


def _load_file_config(path: str | None) -> dict:
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return {}
        path = str(DEFAULT_CONFIG_PATH)
    try:
        return load_config(path)
    except FileNotFoundError as exc:
        raise _CLIError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise _CLIError(f"Invalid YAML in config file {path}: {exc}") from exc
    except (OSError, ValueError) as exc:
        raise _CLIError(str(exc)) from exc


def _open_store(db_arg: str | None, file_config: dict) -> GatewayStore:
    db_path = db_arg or file_config.get("database") or DEFAULT_DB_PATH
    store = GatewayStore(db_path)
    store.init_schema()
    return store


def _resolve_backend_id(store: GatewayStore, ref: str) -> int:
    if ref.isdigit():
        return int(ref)
    mcp = store.get_mcp_by_name(ref)
    if mcp is None:
        raise _CLIError(f"Unknown MCP: {ref}")
    return mcp["id"]


def _parse_env(pairs: list[str]) -> dict[str, str] | None:
    if not pairs:
        return None
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise _CLIError(f"--env must be KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


async def _serve(state: GatewayServerState, store: GatewayStore) -> None:
    status = await state.start()
    try:
        store.register_gateway_entry(status.port)
    except sqlite3.Error as exc:
        logger.warning("Failed to register gateway in library: %s", exc)

    print(f"MCP Gateway listening on {status.mcp_endpoint}", file=sys.stderr)

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; Ctrl+C still raises there
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, shutdown.set)

    stopped = asyncio.ensure_future(state.wait_stopped())
    signalled = asyncio.ensure_future(shutdown.wait())
    await asyncio.wait({stopped, signalled}, return_when=asyncio.FIRST_COMPLETED)
    if signalled.done() and state.is_running:
        logger.info("Shutdown signal received")
        state.stop()
    signalled.cancel()
    await stopped


def _run(args, file_config: dict) -> None:
    store = _open_store(args.db, file_config)
    try:
        stored = store.load_gateway_config()

        if args.command == "serve":
            config = resolve_gateway_config(stored, file_config, args.port)
            state = GatewayServerState(store, config)
            if args.auto and not state.should_auto_start():
                logger.info("Gateway auto-start disabled, not serving")
                print("Gateway auto-start is disabled; nothing to do.", file=sys.stderr)
                return
            asyncio.run(_serve(state, store))

        elif args.command == "status":
            config = resolve_gateway_config(stored, file_config)
            state = GatewayServerState(store, config)
            data = state.get_status_sync().to_dict()
            data["config"] = config.to_dict()
            data["members"] = [r.to_dict() for r in store.get_gateway_backends()]
            _print_json(data)

        elif args.command == "connection-config":
            config = resolve_gateway_config(stored, file_config, args.port)
            _print_json(GatewayServerState(store, config).get_connection_config())

        elif args.command == "backends":
            _run_backends(args, store)

        elif args.command == "config":
            merged = stored.to_dict()
            for key in ("enabled", "port", "auto_start"):
                value = getattr(args, key)
                if value is not None:
                    merged[key] = value
            config = GatewayConfig.from_dict(merged)
            store.save_gateway_config(config)
            _print_json(config.to_dict())
    finally:
        store.close()


def _run_backends(args, store: GatewayStore) -> None:
    action = args.backend_command

    if action == "list":
        _print_json([r.to_dict() for r in store.get_gateway_backends()])
        return

    if action == "add":
        existing = store.get_mcp_by_name(args.name)
        if existing is None:
            if args.transport_type == "stdio" and not args.mcp_command:
                raise _CLIError("--command is required for a new stdio MCP")
            mcp_id = store.create_mcp(
                args.name,
                transport_type=args.transport_type,
                command=args.mcp_command,
                args=args.mcp_args or None,
                env=_parse_env(args.mcp_env),
            )
            logger.info("Created library entry %s (id=%d)", args.name, mcp_id)
        else:
            mcp_id = existing["id"]
        store.add_gateway_backend(mcp_id)
        _print_json(store.get_gateway_backend(mcp_id).to_dict())
        return

    mcp_id = _resolve_backend_id(store, args.backend)
    if action == "remove":
        store.remove_gateway_backend(mcp_id)
        print(f"Removed MCP {mcp_id} from gateway")
        return
    if action in ("enable", "disable"):
        store.toggle_gateway_backend(mcp_id, action == "enable")
    elif action == "auto-restart":
        store.set_gateway_backend_auto_restart(mcp_id, args.value == "on")
    _print_json(store.get_gateway_backend(mcp_id).to_dict())


def main(argv=None):
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        file_config = _load_file_config(args.config)
        level_name = str(file_config.get("log_level", "INFO")).upper()
        setup_logging("mcp-gateway", level=getattr(logging, level_name, logging.INFO))
        _run(args, file_config)
    except (_CLIError, GatewayError, sqlite3.Error) as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
