"""CLI entry point for Tabular."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .broadcaster import check_broker, create_broadcaster
from .client import ListClient
from .config import Config, load_config
from .errors import TabularError
from .mirror import ClientMirror, MirrorEntry
from .service import MutationService
from .store import OrderedStore


# Mutation context passed through `extra=` by the mutation service
CONTEXT_FIELDS = ("item_id", "originator_id", "event")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Mutation context fields are lifted to top-level keys so log lines from
    the server and from each device can be joined on item and originator.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        for key in CONTEXT_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_data, default=str)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])


def _make_client(config: Config) -> ListClient:
    return ListClient(
        base_url=config.server.url,
        device_id=config.device.id,
        timeout=config.server.request_timeout_seconds,
        max_retries=config.server.retry_max_attempts,
    )


def _print_items(items: list[MirrorEntry]) -> None:
    if not items:
        print("(empty)")
    for index, entry in enumerate(items):
        suffix = f"id {entry.id}" if entry.id is not None else "pending"
        print(f"{index:3d}. {entry.name} ({suffix})")


async def cmd_serve(args: argparse.Namespace) -> int:
    """Run the list API server."""
    config = load_config(args.config)

    import uvicorn

    from .server import create_app

    host = args.host or config.server.host
    port = args.port or config.server.port

    store = OrderedStore(config.store.db_path, timeout=config.store.timeout_seconds)
    broadcaster = create_broadcaster(config.mqtt)

    try:
        store.connect()
        await broadcaster.connect()
    except TabularError as e:
        print(f"Error: {e}", file=sys.stderr)
        store.close()
        return 1

    service = MutationService(store, broadcaster, move_strategy=config.store.move_strategy)
    app = create_app(config, service)

    print("Starting Tabular server")
    print(f"Database: {store.db_path}")
    if config.mqtt.enabled:
        print(f"MQTT: {config.mqtt.broker}:{config.mqtt.port} (topic: {config.mqtt.topic})")
    else:
        print("MQTT: disabled (in-process broadcast)")
    print(f"URL: http://{host}:{port}")

    try:
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level="info" if args.verbose else "warning",
            )
        )
        await server.serve()
    finally:
        await broadcaster.disconnect()
        store.close()

    return 0


async def cmd_list(args: argparse.Namespace) -> int:
    """Print the list in display order."""
    config = load_config(args.config)

    async with _make_client(config) as client:
        mirror = ClientMirror(config.device.id, client)
        try:
            await mirror.connect()
        except TabularError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.json:
        print(json.dumps([{"id": e.id, "name": e.name} for e in mirror.items], indent=2))
    else:
        _print_items(mirror.items)
    return 0


async def cmd_add(args: argparse.Namespace) -> int:
    """Append an item."""
    config = load_config(args.config)

    async with _make_client(config) as client:
        mirror = ClientMirror(config.device.id, client)
        try:
            entry = await mirror.add(args.name)
        except TabularError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(f"Added {entry.name} (id {entry.id})")
    return 0


async def cmd_remove(args: argparse.Namespace) -> int:
    """Remove the item at a display index."""
    config = load_config(args.config)

    async with _make_client(config) as client:
        mirror = ClientMirror(config.device.id, client)
        try:
            await mirror.connect()
            name = mirror.items[args.index].name if 0 <= args.index < len(mirror.items) else None
            await mirror.remove(args.index)
        except TabularError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(f"Removed {name}")
    return 0


async def cmd_move(args: argparse.Namespace) -> int:
    """Move an item between display indices."""
    config = load_config(args.config)

    async with _make_client(config) as client:
        mirror = ClientMirror(config.device.id, client)
        try:
            await mirror.connect()
            await mirror.move(args.src, args.dest)
        except TabularError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    _print_items(mirror.items)
    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Mirror the list and reprint it on every remote change."""
    config = load_config(args.config)

    # Events only reach other processes over MQTT
    if not config.mqtt.enabled:
        print("Error: watch requires MQTT (mqtt.enabled is false)", file=sys.stderr)
        return 1

    broadcaster = create_broadcaster(config.mqtt, subscribe=True)

    def on_change(items: list[MirrorEntry]) -> None:
        print(f"--- {datetime.now().strftime('%H:%M:%S')} ---")
        _print_items(items)

    async with _make_client(config) as client:
        mirror = ClientMirror(config.device.id, client, on_change=on_change)
        try:
            # Subscribe before the initial load so no event falls in between
            await broadcaster.connect()
            subscription = broadcaster.subscribe()
            await mirror.connect()
        except TabularError as e:
            print(f"Error: {e}", file=sys.stderr)
            await broadcaster.disconnect()
            return 1

        try:
            await mirror.listen(subscription)
        except (KeyboardInterrupt, asyncio.CancelledError):
            print("\nStopping...")
        finally:
            subscription.close()
            await broadcaster.disconnect()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check connectivity status."""
    config = load_config(args.config)

    async with _make_client(config) as client:
        server_reachable = await client.check_connection()

    mqtt_reachable = None
    if config.mqtt.enabled:
        mqtt_reachable = await check_broker(config.mqtt)

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "device": {"id": config.device.id},
        "server": {"url": config.server.url, "reachable": server_reachable},
        "mqtt": {
            "enabled": config.mqtt.enabled,
            "broker": config.mqtt.broker,
            "port": config.mqtt.port,
            "topic": config.mqtt.topic,
            "reachable": mqtt_reachable,
        },
        "store": {
            "db_path": config.store.db_path,
            "move_strategy": config.store.move_strategy,
        },
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("Tabular Status Check")
    print("====================")
    print(f"Device: {config.device.id}")
    print()
    print(f"Server ({config.server.url}):")
    print(f"  Status: {'Reachable' if server_reachable else 'Not reachable'}")
    print()
    print(f"MQTT ({config.mqtt.broker}:{config.mqtt.port}):")
    if not config.mqtt.enabled:
        print("  Status: Disabled")
    elif mqtt_reachable:
        print("  Status: Reachable")
        print(f"  Topic: {config.mqtt.topic}")
    else:
        print("  Status: Not reachable")
        print("  Make sure the MQTT broker is running")
    print()
    print("Store:")
    print(f"  Path: {config.store.db_path}")
    print(f"  Move strategy: {config.store.move_strategy}")

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="tabular",
        description="Shared users list with real-time sync across devices",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the list API server")
    serve_parser.add_argument("-p", "--port", type=int, default=None, help="Port (default: from config)")
    serve_parser.add_argument("--host", type=str, default=None, help="Host to bind (default: from config)")
    serve_parser.set_defaults(func=cmd_serve)

    list_parser = subparsers.add_parser("list", help="Print the list")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser("add", help="Append an item")
    add_parser.add_argument("name", help="Name of the item")
    add_parser.set_defaults(func=cmd_add)

    remove_parser = subparsers.add_parser("remove", help="Remove the item at an index")
    remove_parser.add_argument("index", type=int, help="Display index (0-based)")
    remove_parser.set_defaults(func=cmd_remove)

    move_parser = subparsers.add_parser("move", help="Move an item to another index")
    move_parser.add_argument("src", type=int, help="Current display index")
    move_parser.add_argument("dest", type=int, help="Target display index")
    move_parser.set_defaults(func=cmd_move)

    watch_parser = subparsers.add_parser("watch", help="Follow the list live")
    watch_parser.set_defaults(func=cmd_watch)

    status_parser = subparsers.add_parser("status", help="Check connectivity status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
