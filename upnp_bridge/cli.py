"""
UPnP Bridge CLI entry point.

Provides command-line interface for running the bridge.
"""

import argparse
import asyncio
import json
import logging
import sys
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Optional

import aiohttp

from upnp_bridge import __version__
from upnp_bridge.app import UPnPBridge
from upnp_bridge.config import DEFAULT_SEARCH_TARGET, Config, ConfigError, load_config
from upnp_bridge.upnp import DeviceDescription, SsdpResponse, discover, parse_device_description

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_NETWORK_ERROR = 3


def setup_logging(level: str = "info") -> None:
    """Configure logging to stdout."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="upnp-bridge",
        description="Bridge UPnP/DLNA media renderers to an xPL home-automation bus",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  upnp-bridge --discover
  upnp-bridge --discover --timeout 10 --json
  upnp-bridge --config config.yaml
  upnp-bridge --alias uuid:1234=livingroom --poll-interval 500

Environment Variables:
  UPNPBRIDGE_XPL_SOURCE, UPNPBRIDGE_XPL_BROADCAST, UPNPBRIDGE_XPL_PORT
  UPNPBRIDGE_CALLBACK_PORT, UPNPBRIDGE_POLL_INTERVAL_MS
  UPNPBRIDGE_DEVICE_ALIASES, UPNPBRIDGE_LOG_LEVEL
""",
    )

    # General
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    # Discovery mode
    parser.add_argument(
        "--discover",
        action="store_true",
        help="Scan network for media renderers and exit",
    )
    parser.add_argument(
        "--timeout",
        "-t",
        type=float,
        default=3.0,
        metavar="SECONDS",
        help="Discovery timeout in seconds (used with --discover)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="json_output",
        help="Output as JSON (used with --discover)",
    )

    # Configuration
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("./config.yaml"),
        metavar="PATH",
        help="Path to config file (default: ./config.yaml)",
    )

    # Bus
    bus_group = parser.add_argument_group("xPL Bus")
    bus_group.add_argument(
        "--source",
        metavar="TEXT",
        help="xPL source name (default: upnp-avtransport.<hostname>)",
    )
    bus_group.add_argument(
        "--broadcast",
        metavar="TEXT",
        help="xPL broadcast address (default: 255.255.255.255)",
    )
    bus_group.add_argument(
        "--xpl-port",
        type=int,
        metavar="INT",
        help="xPL hub port (default: 3865)",
    )

    # Devices
    device_group = parser.add_argument_group("Devices")
    device_group.add_argument(
        "--alias",
        action="append",
        metavar="USN=ALIAS",
        help="Bus name for a device (repeatable)",
    )
    device_group.add_argument(
        "--search-target",
        metavar="URN",
        help=f"SSDP search target (default: {DEFAULT_SEARCH_TARGET})",
    )
    device_group.add_argument(
        "--poll-interval",
        type=int,
        metavar="MS",
        help="AVTransport poll interval in milliseconds, 0 disables (default: 1000)",
    )
    device_group.add_argument(
        "--full-poll",
        action="store_true",
        help="Poll media, position and transport info on every tick",
    )

    # Server
    server_group = parser.add_argument_group("Server")
    server_group.add_argument(
        "--callback-port",
        type=int,
        metavar="INT",
        help="Event callback port (default: ephemeral)",
    )
    server_group.add_argument(
        "--bind",
        metavar="TEXT",
        help="Bind address (default: 0.0.0.0)",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        metavar="LEVEL",
        help="Log level: debug, info, warning, error",
    )

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    return build_parser().parse_args(argv)


def _set_nested(d: dict, path: tuple, value: Any) -> None:
    """Set a nested dictionary value."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def args_to_dict(args: argparse.Namespace) -> dict:
    """Convert argparse namespace to nested config dict."""
    result: dict = {}

    mappings = {
        "source": ("bus", "source"),
        "broadcast": ("bus", "broadcast_address"),
        "xpl_port": ("bus", "port"),
        "search_target": ("discovery", "search_target"),
        "poll_interval": ("polling", "avtransport_interval_ms"),
        "full_poll": ("polling", "full_avtransport_poll"),
        "callback_port": ("server", "callback_port"),
        "bind": ("server", "bind_address"),
        "log_level": ("logging", "level"),
    }

    for arg_name, path in mappings.items():
        value = getattr(args, arg_name, None)
        if value is None:
            continue
        # Only set when explicitly enabled
        if arg_name == "full_poll" and not value:
            continue
        _set_nested(result, path, value)

    aliases: dict[str, str] = {}
    for item in getattr(args, "alias", None) or []:
        usn, sep, alias = item.partition("=")
        if sep and usn and alias:
            aliases[usn.strip()] = alias.strip()
    if aliases:
        _set_nested(result, ("devices", "aliases"), aliases)

    return result


def log_config(config: Config) -> None:
    """Log configuration summary."""
    logger.info(f"xPL source: {config.bus.source}")
    logger.info(f"xPL broadcast: {config.bus.broadcast_address}:{config.bus.port}")
    logger.info(f"Search target: {config.discovery.search_target}")
    logger.info(
        f"AVTransport polling: {config.polling.avtransport_interval_ms}ms"
        f"{' (full)' if config.polling.full_avtransport_poll else ''}"
    )
    if config.devices.aliases:
        logger.info(f"Aliases: {config.devices.aliases}")


async def _describe(
    session: aiohttp.ClientSession, response: SsdpResponse
) -> Optional[DeviceDescription]:
    try:
        async with session.get(response.location) as r:
            if r.status != 200:
                return None
            body = await r.read()
        return parse_device_description(body, response.location)
    except (aiohttp.ClientError, asyncio.TimeoutError, ET.ParseError) as e:
        logger.debug(f"Cannot describe {response.location}: {e}")
        return None


async def run_discovery(timeout: float, json_output: bool, search_target: str) -> int:
    """
    Run renderer discovery.

    Args:
        timeout: Discovery timeout in seconds
        json_output: Output as JSON if True
        search_target: SSDP search target

    Returns:
        Exit code
    """
    if not json_output:
        print(f"Scanning for media renderers ({timeout}s timeout)...")

    try:
        responses = await discover(timeout=timeout, search_target=search_target)
    except OSError as e:
        print(f"Discovery failed: {e}", file=sys.stderr)
        return EXIT_NETWORK_ERROR

    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as session:
        descriptions = await asyncio.gather(*(_describe(session, r) for r in responses))

    devices = []
    for response, description in zip(responses, descriptions):
        devices.append(
            {
                "usn": response.usn.split("::", 1)[0],
                "name": description.friendly_name if description else "",
                "ip": response.address[0],
                "model": description.model_name if description else "",
                "manufacturer": description.manufacturer if description else "",
                "services": sorted(description.services) if description else [],
                "location": response.location,
            }
        )

    if json_output:
        print(json.dumps({"devices": devices, "count": len(devices)}, indent=2))
        return EXIT_SUCCESS

    if not devices:
        print("\nNo media renderers found.")
        print("\nTroubleshooting tips:")
        print("  - Ensure your renderer is powered on and connected")
        print("  - Try increasing timeout with --timeout 10")
        return EXIT_SUCCESS

    print(f"\nFound {len(devices)} renderer(s):\n")
    for d in devices:
        print(f"  {d['name'] or d['usn']}")
        print(f"    USN: {d['usn']}")
        print(f"    IP: {d['ip']}")
        if d["model"]:
            print(f"    Model: {d['model']}")
        if d["manufacturer"]:
            print(f"    Manufacturer: {d['manufacturer']}")
        if d["services"]:
            print(f"    Services: {', '.join(d['services'])}")
        print()

    first = devices[0]
    print("Config example (add to config.yaml):")
    print("  devices:")
    print("    aliases:")
    print(f'      "{first["usn"]}": livingroom')

    return EXIT_SUCCESS


def run_bridge(args: argparse.Namespace) -> int:
    """
    Run the bridge.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    setup_logging("info")
    logger.info(f"UPnP Bridge v{__version__}")

    try:
        config = load_config(args.config, args_to_dict(args))
        setup_logging(config.logging.level)
        log_config(config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    try:
        app = UPnPBridge(config)
        asyncio.run(app.run())
        return EXIT_SUCCESS

    except (ConnectionError, OSError) as e:
        logger.error(f"Network error: {e}")
        return EXIT_NETWORK_ERROR

    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_SUCCESS

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_NETWORK_ERROR


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code: 0=success, 1=config error, 3=network error
    """
    args = parse_args(argv)

    if args.discover:
        return asyncio.run(
            run_discovery(args.timeout, args.json_output, args.search_target or DEFAULT_SEARCH_TARGET)
        )
    return run_bridge(args)


if __name__ == "__main__":
    sys.exit(main())
