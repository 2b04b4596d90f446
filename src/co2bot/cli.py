"""CLI entrypoint for the CO2 bot."""

from __future__ import annotations

import argparse
import logging
from typing import Any

import anyio
import logfire

from .config import Config
from .runner import run_forever


def _parse_cli_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="co2bot",
        description="Telegram CO2 monitor (getUpdates -> per-chat sensor watchers).",
    )
    parser.add_argument(
        "--bot",
        default=None,
        help="Telegram bot token (never printed). Falls back to CO2BOT_BOT_TOKEN.",
    )
    parser.add_argument(
        "--sensor",
        default=None,
        help="Sensor URI returning a JSON reading. Falls back to CO2BOT_SENSOR_URI.",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=int,
        default=None,
        help="Telegram getUpdates long-poll timeout seconds (default: 60).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO).",
    )
    return parser.parse_args(argv)


def build_config(
    *,
    bot: str | None = None,
    sensor: str | None = None,
    timeout_seconds: int | None = None,
) -> Config:
    """Merge explicit CLI values over `CO2BOT_*` environment settings."""

    overrides: dict[str, Any] = {}
    if bot is not None:
        overrides["bot_token"] = bot
    if sensor is not None:
        overrides["sensor_uri"] = sensor
    if timeout_seconds is not None:
        overrides["poll_timeout_seconds"] = timeout_seconds
    return Config(**overrides)


async def run(
    *,
    bot: str | None = None,
    sensor: str | None = None,
    timeout_seconds: int | None = None,
    log_level: str = "INFO",
) -> None:
    """Function entrypoint."""

    logfire.configure(send_to_logfire="if-token-present")
    logging.basicConfig(
        level=log_level.upper(), handlers=[logfire.LogfireLoggingHandler()]
    )

    config = build_config(bot=bot, sensor=sensor, timeout_seconds=timeout_seconds)
    await run_forever(config=config)


async def main() -> None:
    """CLI entrypoint."""
    args = _parse_cli_args()
    await run(
        bot=args.bot,
        sensor=args.sensor,
        timeout_seconds=args.timeout_seconds,
        log_level=args.log_level,
    )


def cli() -> None:
    """Console-script entrypoint."""
    anyio.run(main)
