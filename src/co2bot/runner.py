"""Polling loop wiring: update source -> dispatcher -> worker registry."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from rich import print

from .config import Config
from .dispatcher import Dispatcher
from .models import InboundEvent, SensorReading
from .registry import WorkerRegistry
from .transport import RemoteTransport, TransportError
from .updates import UpdateSource
from .worker import WorkerTimings


class BotTransport(Protocol):
    """Everything `serve()` needs from `RemoteTransport`."""

    async def fetch_events(
        self,
        *,
        offset_floor: int,
        limit: int = 0,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]: ...

    async def send_text(self, conversation_id: int, text: str) -> None: ...

    async def send_keyboard(
        self,
        conversation_id: int,
        prompt_text: str,
        keyboard: dict[str, Any],
    ) -> None: ...

    async def read_sensor(self) -> SensorReading: ...

    async def get_me(self) -> dict[str, Any]: ...


def timings_from_config(config: Config) -> WorkerTimings:
    return WorkerTimings(
        default_delay_seconds=config.default_delay_seconds,
        alert_cooldown_seconds=config.alert_cooldown_seconds,
    )


async def dispatch_events(
    events: AsyncIterator[InboundEvent], dispatcher: Dispatcher
) -> None:
    """Hand events to the dispatcher one at a time, in arrival order."""

    async for event in events:
        await dispatcher.handle(event)


async def serve(
    *,
    transport: BotTransport,
    config: Config,
) -> None:
    """Run ingestion and dispatch until a fatal error.

    Workers live in the registry's task group; they are stopped when this
    returns or raises.
    """

    try:
        me = await transport.get_me()
    except TransportError as e:
        print(f"[yellow]Telegram getMe failed[/yellow]: {e}")
        me = {}

    bot_username = me.get("username") if isinstance(me.get("username"), str) else None
    source = UpdateSource(
        transport=transport,
        timeout_seconds=config.poll_timeout_seconds,
        limit=config.poll_limit,
    )
    timings = timings_from_config(config)

    print(
        "\n".join(
            [
                "co2bot running (polling getUpdates).",
                f"- bot_username: {bot_username}",
                f"- sensor_uri: {config.sensor_uri}",
                f"- poll_timeout_seconds: {config.poll_timeout_seconds}",
                f"- poll_limit: {config.poll_limit or None}",
                f"- default_delay_seconds: {timings.default_delay_seconds}",
                f"- alert_cooldown_seconds: {timings.alert_cooldown_seconds}",
            ]
        )
    )

    async with WorkerRegistry(transport=transport, timings=timings) as registry:
        dispatcher = Dispatcher(transport=transport, registry=registry)
        await dispatch_events(source.subscribe(), dispatcher)


async def run_forever(*, config: Config) -> None:
    await serve(transport=RemoteTransport(config=config), config=config)
