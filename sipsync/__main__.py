"""CLI entry point for SipSync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime, timedelta
from pathlib import Path

from .config import Config, DeviceConfig, load_config
from .device import RATE_LIMITED, Device, build_transport, run_device, wait_until_settled
from .drinks import DrinkCategory
from .replica import local_now
from .stats import DerivedStats, streak_encouragement
from .store import KeyValueStore
from .sync import LoopbackTransport


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

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
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


def _print_stats(stats: DerivedStats, indent: str = "") -> None:
    milestone = stats.milestone
    print(f"{indent}Today: {stats.today_count} drinks ({stats.today_ounces:g} oz)")
    print(f"{indent}Streak: {stats.streak} days (next milestone {milestone.next}, "
          f"{streak_encouragement(stats.streak)})")
    print(f"{indent}This week: {stats.this_week_count} drinks")
    print(f"{indent}30-day average: {stats.average_daily_count:.1f} drinks, "
          f"{stats.average_daily_ounces:.1f} oz per active day")
    print(f"{indent}Total logged: {stats.total_count}")


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the device and keep syncing until interrupted."""
    config = load_config(args.config)

    print(f"Starting SipSync device: {config.device.name} (peer: {config.device.peer})")
    if config.sync.enabled and config.sync.transport == "mqtt":
        print(f"MQTT: {config.mqtt.broker}:{config.mqtt.port} (prefix: {config.mqtt.topic_prefix})")
    else:
        print("Sync: disabled")

    try:
        await run_device(config)
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


async def cmd_log(args: argparse.Namespace) -> int:
    """Log a drink on this device."""
    config = load_config(args.config)
    device = Device(config, transport=build_transport(config))

    try:
        await device.start()
        if device.coordinator:
            if not await device.coordinator.wait_activated(timeout=config.sync.request_timeout_seconds):
                print("Warning: sync transport not ready, entry stays local for now", file=sys.stderr)

        timestamp = None
        if args.minutes_ago:
            timestamp = device.now() - timedelta(minutes=args.minutes_ago)

        try:
            result = await device.log_drink(
                args.drink_type,
                custom_ounces=args.ounces,
                note=args.note,
                timestamp=timestamp,
            )
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        if not result.allowed:
            if result.reason == RATE_LIMITED:
                remaining = device.rate_limiter.seconds_remaining()
                print(f"{result.message} ({remaining:.0f}s remaining)")
            else:
                print(result.message)
            return 1

        entry = result.entry
        print(f"Logged {entry.drink_type.display_name} ({entry.ounces:g} oz) at "
              f"{entry.timestamp.strftime('%H:%M')}")
        _print_stats(device.stats())
    finally:
        await device.stop()

    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Print statistics for the local replica."""
    config = load_config(args.config)
    device = Device(config)

    try:
        stats = device.stats()
        if args.json:
            print(json.dumps(stats.to_dict(), indent=2))
        else:
            print(f"SipSync Stats ({config.device.name})")
            print("=" * 30)
            _print_stats(stats)
            print()
            print("Last 7 days:")
            for day in stats.last_7_days:
                print(f"  {day.day.strftime('%a %m/%d')}: {day.count} ({day.ounces:g} oz)")
    finally:
        device.kv.close()

    return 0


def cmd_types(args: argparse.Namespace) -> int:
    """List drink types."""
    for category in DrinkCategory:
        print(f"{category.value}:")
        for drink in category.types:
            print(f"  {drink.value:<22} {drink.short_name:<8} {drink.ounces:g} oz")
    return 0


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local storage, rate limiter and sync status."""
    config = load_config(args.config)
    device = Device(config)

    try:
        status_data = device.get_status()
    finally:
        device.kv.close()

    status_data["timestamp"] = datetime.now().isoformat()

    mqtt_status = None
    if config.sync.enabled and config.sync.transport == "mqtt":
        from .sync.mqtt_transport import check_broker

        mqtt_status = {
            "broker": config.mqtt.broker,
            "port": config.mqtt.port,
            "topic_prefix": config.mqtt.topic_prefix,
            "reachable": await check_broker(config.mqtt),
        }
    status_data["mqtt"] = mqtt_status

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    storage = status_data["storage"]
    rate_limit = status_data["rate_limit"]
    peer = status_data["peer_capabilities"]

    print("SipSync Status Check")
    print("====================")
    print(f"Device: {status_data['device']} (peer: {status_data['peer']})")
    print()

    print("Storage:")
    print(f"  Database: {storage['db_path']}")
    print(f"  Namespace: {storage['namespace']}")
    print(f"  Entries: {storage['total_entries']}")
    if storage["decode_error"]:
        print(f"  Last load failed: {storage['decode_error']}")
    print()

    print("Rate limit:")
    print(f"  Minimum interval: {rate_limit['minimum_interval_seconds']:.0f}s")
    print(f"  Last entry: {rate_limit['last_admitted'] or 'never'}")
    if rate_limit["seconds_remaining"] > 0:
        print(f"  Next entry allowed in {rate_limit['seconds_remaining']:.0f}s")
    else:
        print("  Next entry allowed now")
    print()

    print("Peer:")
    print(f"  Premium: {'Yes' if peer['is_premium'] else 'No'}")
    print(f"  Last update: {peer['updated_at'] or 'never'}")
    print()

    if mqtt_status:
        print(f"MQTT ({mqtt_status['broker']}:{mqtt_status['port']}):")
        if mqtt_status["reachable"]:
            print("  Status: Reachable")
        else:
            print("  Status: Not reachable")
            print("  Make sure the MQTT broker is running")
    else:
        print("Sync: disabled")

    return 0


def cmd_reset(args: argparse.Namespace) -> int:
    """Delete every entry on this device."""
    if not args.yes:
        print("This deletes every entry on this device. Re-run with --yes to confirm.")
        return 1

    config = load_config(args.config)
    device = Device(config)
    try:
        count = device.reset()
    finally:
        device.kv.close()

    print(f"Deleted {count} entries from {config.device.name}")
    return 0


async def cmd_simulate(args: argparse.Namespace) -> int:
    """Run a phone and a watch in-process and show that they converge."""
    config = load_config(args.config)
    interval = timedelta(seconds=config.rate_limit.minimum_interval_seconds)

    phone_link, watch_link = LoopbackTransport.pair("phone", "watch")
    devices = []
    for name, peer, link in (("phone", "watch", phone_link), ("watch", "phone", watch_link)):
        device_config = Config(
            device=DeviceConfig(name=name, peer=peer, premium=args.premium and name == "phone"),
            rate_limit=config.rate_limit,
            sync=config.sync,
        )
        kv = KeyValueStore(":memory:", config.storage.namespace)
        devices.append(Device(device_config, kv=kv, transport=link))
    phone, watch = devices

    now = local_now()
    earlier = now - interval - timedelta(seconds=1)

    try:
        for device in devices:
            await device.start()
        await wait_until_settled(phone, watch)

        print("Link up: each device logs one drink")
        await phone.log_drink("Regular Can", now=earlier)
        await watch.log_drink("Tall Can", now=earlier)
        await wait_until_settled(phone, watch)

        print("Link down: each device logs another drink")
        phone_link.set_reachable(False)
        await phone.log_drink("20oz Bottle", now=now)
        await watch.log_drink("Mini Can", now=now)
        await wait_until_settled(phone, watch)
        print(f"  phone holds {len(phone.replica())}, watch holds {len(watch.replica())}")

        print("Link restored")
        phone_link.set_reachable(True)
        settled = await wait_until_settled(phone, watch)
        if not settled:
            print("Warning: devices did not settle", file=sys.stderr)

        print()
        for device in devices:
            print(f"{device.name}:")
            _print_stats(device.stats(now), indent="  ")
            print(f"  Peer premium: {'Yes' if device.capabilities.is_premium else 'No'}")
        print()

        converged = phone.replica() == watch.replica()
        print(f"Converged: {'yes' if converged else 'no'}")
    finally:
        for device in devices:
            await device.stop()

    return 0 if converged else 1


async def cmd_dashboard(args: argparse.Namespace) -> int:
    """Start the web dashboard."""
    config = load_config(args.config)

    try:
        from .dashboard import create_app

        import uvicorn
    except ImportError as e:
        print(f"Dashboard dependencies not installed: {e}", file=sys.stderr)
        print("Install with: pip install sipsync[dashboard]", file=sys.stderr)
        return 1

    device = Device(config, transport=build_transport(config))

    print("Starting SipSync Dashboard")
    print(f"Device: {config.device.name}")
    print(f"URL: http://{args.host}:{args.port}")

    app = create_app(config, device)

    try:
        await device.start()
        verbose = getattr(args, "verbose", False)
        config_uvicorn = uvicorn.Config(
            app,
            host=args.host,
            port=args.port,
            log_level="info" if verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        await device.stop()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sipsync",
        description="Drink log kept in sync between a phone and a watch",
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
        dest="json_logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the device and sync with its peer")
    run_parser.set_defaults(func=cmd_run)

    # Log command
    log_parser = subparsers.add_parser("log", help="Log a drink")
    log_parser.add_argument("drink_type", help="Drink type, e.g. 'Regular Can' or 'tall_can'")
    log_parser.add_argument("--ounces", type=float, default=None, help="Custom volume in ounces")
    log_parser.add_argument("--note", type=str, default=None, help="Optional note")
    log_parser.add_argument(
        "--minutes-ago", type=int, default=0, help="Backdate the entry (at most 24 hours)"
    )
    log_parser.set_defaults(func=cmd_log)

    # Stats command
    stats_parser = subparsers.add_parser("stats", help="Show drink statistics")
    stats_parser.add_argument("--json", action="store_true", help="Output stats as JSON")
    stats_parser.set_defaults(func=cmd_stats)

    # Types command
    types_parser = subparsers.add_parser("types", help="List drink types")
    types_parser.set_defaults(func=cmd_types)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show storage and sync status")
    status_parser.add_argument("--json", action="store_true", help="Output status as JSON")
    status_parser.set_defaults(func=cmd_status)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Delete every entry on this device")
    reset_parser.add_argument("--yes", action="store_true", help="Confirm the reset")
    reset_parser.set_defaults(func=cmd_reset)

    # Simulate command
    simulate_parser = subparsers.add_parser(
        "simulate", help="Run a phone and a watch in-process over a loopback link"
    )
    simulate_parser.add_argument(
        "--premium",
        action="store_true",
        help="Declare the phone as premium to the watch",
    )
    simulate_parser.set_defaults(func=cmd_simulate)

    # Dashboard command
    dashboard_parser = subparsers.add_parser("dashboard", help="Start the web dashboard")
    dashboard_parser.add_argument(
        "-p", "--port",
        type=int,
        default=8080,
        help="Port to run dashboard on (default: 8080)",
    )
    dashboard_parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind dashboard to (default: 127.0.0.1)",
    )
    dashboard_parser.set_defaults(func=cmd_dashboard)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        func = args.func
        if asyncio.iscoroutinefunction(func):
            return asyncio.run(func(args))
        return func(args)
    except ValueError as e:
        # Invalid configuration
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
