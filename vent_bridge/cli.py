"""Command-line interface for vent-bridge."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import BridgeApp
from .config import BridgeConfig, load_config
from .logging import configure_logging
from .poller import CommandRejected, DashboardPoller

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME,
        description="Bridge an MQTT smoke/vent device to a polling HTTP dashboard",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help=(
            f"Path to configuration file (default: ${constants.CONFIG_ENV_VAR} "
            f"or {constants.DEFAULT_CONFIG_PATH})"
        ),
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Start the bridge service")
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    watch_parser = subparsers.add_parser(
        "watch", help="Poll a running bridge and log telemetry snapshots"
    )
    watch_parser.add_argument("--url", help="Bridge base URL (default: from config)")

    send_parser = subparsers.add_parser("send", help="Send a vent command")
    send_parser.add_argument("vent", choices=["ON", "OFF", "on", "off"])
    send_parser.add_argument("--url", help="Bridge base URL (default: from config)")

    return parser


def _base_url(config: BridgeConfig, override: Optional[str]) -> str:
    if override:
        return override
    return f"http://{config.http.host}:{config.http.port}"


async def _watch(config: BridgeConfig, url: str) -> None:
    poller = DashboardPoller(
        url,
        command_topic=config.relay.command_topic,
        interval=config.http.poll_interval_seconds,
    )
    poller.add_data_listener(
        lambda data: LOGGER.info(
            "smoke_level=%s status=%s vent_state=%s",
            data.get("smoke_level"),
            data.get("status"),
            data.get("vent_state"),
        )
    )
    await poller.run()


async def _send(config: BridgeConfig, url: str, vent: str) -> None:
    poller = DashboardPoller(url, command_topic=config.relay.command_topic)
    try:
        await poller.post_command(vent.upper())
    finally:
        await poller.close()


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
                print(f"{key} = {value}")
            print()
        return 0

    configure_logging(config.logging.level, log_network=config.logging.log_network)
    url = _base_url(config, args.url)

    if args.command == "watch":
        try:
            asyncio.run(_watch(config, url))
        except KeyboardInterrupt:
            pass
        return 0

    if args.command == "send":
        try:
            asyncio.run(_send(config, url, args.vent))
        except CommandRejected as exc:
            LOGGER.error("%s", exc)
            return 1
        return 0

    LOGGER.error("Unknown command: %s", args.command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
