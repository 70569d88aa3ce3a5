"""Command-line interface for xbox-tv."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from . import constants
from .app import XboxTvApp, run_console_action, select_console
from .config import load_config
from .core import ChannelName
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)


def _parse_argument(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="Local network control for game consoles"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--console",
        default=None,
        help="Name of the console to act on (default: first configured console)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("start", help="Run the xbox-tv service")
    subparsers.add_parser("power-on", help="Wake the console and connect")
    subparsers.add_parser("power-off", help="Turn the console off")

    send_parser = subparsers.add_parser("send", help="Send a command on a channel")
    send_parser.add_argument(
        "channel", choices=[name.value for name in ChannelName], help="Target channel"
    )
    send_parser.add_argument("code", help="Command code, e.g. play or volUp")
    send_parser.add_argument(
        "argument", nargs="?", default=None, help="Optional argument, e.g. seek position"
    )

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)

    if args.command == "start":
        XboxTvApp.start(config)
        return 0

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in ("user_token", "password") and value:
                    value = "***"
                print(f"{key} = {value}")
            print()
        return 0

    console = select_console(config, args.console)
    if console is None:
        LOGGER.error("No console named %r in %s", args.console, config.path)
        return 2

    configure_logging(config.logging.level, log_path=None)

    if args.command == "power-on":
        outcome = asyncio.run(
            run_console_action(
                config, console, lambda session: session.power_on(), connect_first=False
            )
        )
    elif args.command == "power-off":
        outcome = asyncio.run(
            run_console_action(config, console, lambda session: session.power_off())
        )
    elif args.command == "send":
        argument = _parse_argument(args.argument)
        outcome = asyncio.run(
            run_console_action(
                config,
                console,
                lambda session: session.send_command(args.channel, args.code, argument),
            )
        )
    else:
        LOGGER.error("Unknown command: %s", args.command)
        return 1

    if not outcome:
        LOGGER.error("%s failed: %s (%s)", args.command, outcome.error, outcome.code)
        return 1
    LOGGER.info("%s succeeded", args.command)
    return 0


if __name__ == "__main__":
    sys.exit(main())
