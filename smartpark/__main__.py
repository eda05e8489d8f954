"""CLI entry point for Smart Park."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
import uuid
from datetime import datetime
from pathlib import Path

import httpx

from .config import Config, load_config
from .models import ParkingStats, SharedState, default_state


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


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
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _open_store(config: Config):
    from .sync import FallbackStore

    store = FallbackStore(
        config.storage.db_path,
        context_id=f"{config.node.name}-{uuid.uuid4().hex[:8]}",
        max_bytes=config.storage.max_value_bytes,
    )
    store.connect()
    return store


def _retry_policy(config: Config):
    from .sync import ExponentialBackoff, FixedDelay

    if config.client.retry_policy == "backoff":
        return ExponentialBackoff(
            base_seconds=config.client.reconnect_delay_seconds,
            max_seconds=config.client.max_reconnect_delay_seconds,
        )
    return FixedDelay(config.client.reconnect_delay_seconds)


async def cmd_relay(args: argparse.Namespace) -> int:
    """Start the relay server."""
    config = load_config(args.config)
    if args.host:
        config.relay.host = args.host
    if args.port:
        config.relay.port = args.port

    import uvicorn

    from .relay import create_app

    print("Starting Smart Park relay")
    print(f"WebSocket endpoint: ws://{config.relay.host}:{config.relay.port}{config.relay.path}")

    app = create_app(config)

    verbose = getattr(args, "verbose", False)
    config_uvicorn = uvicorn.Config(
        app,
        host=config.relay.host,
        port=config.relay.port,
        log_level="info" if verbose else "warning",
    )
    server = uvicorn.Server(config_uvicorn)
    await server.serve()
    return 0


async def cmd_client(args: argparse.Namespace) -> int:
    """Run a headless client that mirrors the shared state."""
    from .sync import ReconnectionSupervisor, SyncManager

    config = load_config(args.config)
    if args.relay_url:
        config.client.relay_url = args.relay_url

    store = _open_store(config)
    manager = SyncManager(
        config.client.relay_url,
        store=store,
        initial_state=default_state(),
        node_id=config.node.name,
    )

    def on_change(fields: list[str], source: str) -> None:
        stats = ParkingStats.from_spots(manager.get_field("spots"))
        print(
            f"[{source}] {', '.join(fields)} changed - "
            f"cars {stats.occupied_cars}/{stats.total_cars}, "
            f"motos {stats.occupied_motos}/{stats.total_motos}"
        )

    def on_error(error: Exception) -> None:
        print(f"Warning: {error}", file=sys.stderr)

    manager.add_listener(on_change)
    manager.add_error_listener(on_error)

    supervisor = ReconnectionSupervisor(manager, _retry_policy(config))
    stop_event = asyncio.Event()

    print(f"Starting Smart Park client: {config.node.name}")
    print(f"Relay: {config.client.relay_url}")
    print(f"Storage: {config.storage.db_path}")

    await supervisor.start()
    watch_task = asyncio.create_task(
        store.watch(
            manager.handle_storage_event,
            interval_seconds=config.storage.poll_interval_seconds,
            stop_event=stop_event,
        )
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        stop_event.set()
        await supervisor.stop()
        await watch_task
        store.close()

    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Check relay status."""
    config = load_config(args.config)
    url = f"{config.client.http_url}/api/health"

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {"name": config.node.name},
        "relay": {"url": config.client.relay_url, "reachable": False},
    }

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(url)
            response.raise_for_status()
            status_data["relay"].update(response.json())
            status_data["relay"]["reachable"] = True
    except httpx.HTTPError as e:
        status_data["relay"]["error"] = str(e)

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0 if status_data["relay"]["reachable"] else 1

    relay = status_data["relay"]
    print("Smart Park Status Check")
    print("=======================")
    print(f"Node: {config.node.name}")
    print()
    print(f"Relay ({relay['url']}):")
    if relay["reachable"]:
        print("  Status: Reachable")
        print(f"  Connected peers: {relay.get('peers', 0)}")
        print(f"  Spots: {relay.get('spots', 0)}")
        print(f"  Seeded: {'Yes' if relay.get('seeded') else 'No'}")
        return 0

    print("  Status: Not reachable")
    print("  Make sure the relay is running (smartpark relay)")
    return 1


def cmd_layouts_list(args: argparse.Namespace) -> int:
    """List saved layout snapshots."""
    config = load_config(args.config)
    store = _open_store(config)
    try:
        snapshots = store.list_snapshots()
    finally:
        store.close()

    if not snapshots:
        print("No saved layouts.")
        return 0

    print(f"{'ID':<38} {'NAME':<24} {'SAVED':<20} SPOTS ZONES")
    for snapshot in snapshots:
        saved = datetime.fromtimestamp(snapshot.date / 1000).strftime("%Y-%m-%d %H:%M")
        print(
            f"{snapshot.id:<38} {snapshot.name[:24]:<24} {saved:<20} "
            f"{len(snapshot.spot_locations):>5} {len(snapshot.zones):>5}"
        )
    return 0


def cmd_layouts_delete(args: argparse.Namespace) -> int:
    """Delete a saved layout snapshot."""
    config = load_config(args.config)
    store = _open_store(config)
    try:
        deleted = store.delete_snapshot(args.snapshot_id)
    finally:
        store.close()

    if not deleted:
        print(f"No layout with id {args.snapshot_id}", file=sys.stderr)
        return 1
    print(f"Deleted layout {args.snapshot_id}")
    return 0


async def _fetch_relay_state(config: Config) -> SharedState:
    async with httpx.AsyncClient(timeout=5.0) as client:
        response = await client.get(f"{config.client.http_url}/api/state")
        response.raise_for_status()
        return SharedState.from_payload(response.json())


async def cmd_insights(args: argparse.Namespace) -> int:
    """Print an occupancy summary for the relay's current state."""
    from .insights import InsightsClient

    config = load_config(args.config)
    insights = InsightsClient(config.ollama)
    if not await insights.check_connection():
        print(f"Ollama not reachable at {config.ollama.base_url}", file=sys.stderr)
        return 1

    try:
        state = await _fetch_relay_state(config)
    except (httpx.HTTPError, ValueError) as e:
        print(f"Relay not reachable: {e}", file=sys.stderr)
        return 1

    print(await insights.suggest(state))
    return 0


async def cmd_simulate(args: argparse.Namespace) -> int:
    """Simulate a traffic scenario and publish the result through the relay."""
    import ollama

    from .facility import Facility
    from .insights import InsightsClient
    from .sync import SyncManager
    from .sync.client import TRANSPORT_ERRORS

    config = load_config(args.config)
    insights = InsightsClient(config.ollama)
    if not await insights.check_connection():
        print(f"Ollama not reachable at {config.ollama.base_url}", file=sys.stderr)
        return 1

    manager = SyncManager(config.client.relay_url, node_id=config.node.name)
    loaded = asyncio.Event()
    manager.add_listener(lambda fields, source: loaded.set() if source == "relay" else None)

    try:
        await manager.connect()
    except TRANSPORT_ERRORS as e:
        print(f"Relay not reachable: {e}", file=sys.stderr)
        return 1

    serve_task = asyncio.create_task(manager.serve())
    try:
        try:
            await asyncio.wait_for(loaded.wait(), timeout=args.timeout)
        except asyncio.TimeoutError:
            print("Relay has no state to simulate on.", file=sys.stderr)
            return 1

        try:
            spots = await insights.simulate(manager.document, args.scenario)
        except (ValueError, ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            print(f"Simulation failed: {e}", file=sys.stderr)
            return 1

        facility = Facility(manager)
        await facility.apply_simulation(spots)
        stats = facility.stats
        print(
            f"Scenario applied: {stats.occupancy_rate:.1f}% occupied "
            f"(cars {stats.occupied_cars}/{stats.total_cars}, "
            f"motos {stats.occupied_motos}/{stats.total_motos})"
        )
    finally:
        await manager.close()
        await serve_task

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="smartpark",
        description="Real-time shared parking state for Smart Park dashboards",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: config.yaml)",
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

    # Relay command
    relay_parser = subparsers.add_parser("relay", help="Start the relay server")
    relay_parser.add_argument("--host", type=str, default=None, help="Host to bind to")
    relay_parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    relay_parser.set_defaults(func=cmd_relay)

    # Client command
    client_parser = subparsers.add_parser("client", help="Run a headless sync client")
    client_parser.add_argument(
        "--relay-url",
        type=str,
        default=None,
        help="Relay WebSocket URL (overrides config)",
    )
    client_parser.set_defaults(func=cmd_client)

    # Status command
    status_parser = subparsers.add_parser("status", help="Check relay status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Insights command
    insights_parser = subparsers.add_parser("insights", help="Summarise current occupancy")
    insights_parser.set_defaults(func=cmd_insights)

    # Simulate command
    simulate_parser = subparsers.add_parser("simulate", help="Simulate a traffic scenario")
    simulate_parser.add_argument("scenario", help="Scenario description")
    simulate_parser.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="Seconds to wait for the relay state",
    )
    simulate_parser.set_defaults(func=cmd_simulate)

    # Layout commands
    layouts_parser = subparsers.add_parser("layouts", help="Manage saved layouts")
    layouts_subparsers = layouts_parser.add_subparsers(dest="layouts_command", help="Layout commands")

    layouts_list = layouts_subparsers.add_parser("list", help="List saved layouts")
    layouts_list.set_defaults(func=cmd_layouts_list)

    layouts_delete = layouts_subparsers.add_parser("delete", help="Delete a saved layout")
    layouts_delete.add_argument("snapshot_id", help="Layout id")
    layouts_delete.set_defaults(func=cmd_layouts_delete)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "layouts" and not args.layouts_command:
        layouts_parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        try:
            return asyncio.run(func(args))
        except KeyboardInterrupt:
            return 0
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
