"""Command-line interface for bayernluft-bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

from . import constants
from .adapters import DeviceHttpClient
from .app import BridgeApp
from .config import BridgeConfig, load_config
from .connectivity import ConnectivityChecker
from .logging import configure_logging
from .registry import DeviceRegistry
from .state import InMemoryStateStore

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Bridge between ventilation controllers and a state tree",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start polling and command handling")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )
    subparsers.add_parser(
        "probe", help="Check once whether each configured device is reachable"
    )

    return parser


async def probe_devices(config: BridgeConfig) -> Dict[str, bool]:
    registry = DeviceRegistry.from_config(config.devices)
    http = DeviceHttpClient(config.http)
    checker = ConnectivityChecker(registry, http, InMemoryStateStore())
    try:
        results, _ = await checker.check_all()
    finally:
        await http.aclose()
    return {registry.get(device_id).name: ok for device_id, ok in results.items()}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        BridgeApp.start(config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "password" and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "probe":
        configure_logging(config.logging.level, log_network=config.logging.log_network)
        results = asyncio.run(probe_devices(config))
        if not results:
            LOGGER.error("No usable devices configured in %s", config.path)
            return 1
        for name, reachable in results.items():
            print(f"{name}: {'reachable' if reachable else 'unreachable'}")
        return 0 if any(results.values()) else 1

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
