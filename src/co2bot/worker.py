"""Per-conversation CO2 watcher.

A `ConversationWorker` owns a control inbox (an anyio memory object stream)
and a self-rescheduling timer. Each loop iteration waits on both at once:
the inbox `receive()` runs inside a cancel scope whose deadline is the timer.
Exactly one of the two branches runs per iteration.

States:
- active: the timer is armed with `current_delay_seconds`
- terminated: `run()` has returned; no further sensor reads happen

Transitions from active:
- `"stop"` (or the inbox being closed) terminates the worker.
- A recognized sleep directive sets the delay to the directive's duration and
  re-arms the timer. No sensor read happens on this transition.
- Any other message is ignored; the armed deadline is kept as is.
- Timer expiry reads the sensor, alerts if `co2 > threshold` and re-arms with
  the cooldown delay after an alert, otherwise with the default delay.

When the timer expires while a control message is already queued, the queued
message wins, so a pending `"stop"` is never held back by a sensor call.
"""

from __future__ import annotations

import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Final, Protocol

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from .models import SensorReading
from .transport import TransportError

logger = logging.getLogger(__name__)

STOP_MESSAGE: Final[str] = "stop"

# Exact texts produced by the sleep keyboard.
SLEEP_DIRECTIVES: Final[dict[str, float]] = {
    "/sleep 15 min": 15 * 60,
    "/sleep 30 min": 30 * 60,
    "/sleep 1 hour": 60 * 60,
    "/sleep 2 hour": 2 * 60 * 60,
    "/sleep 5 hour": 5 * 60 * 60,
}


def alert_text(co2: int) -> str:
    return f"Achtung! CO2 is {co2}!"


class SensorAlertTransport(Protocol):
    """The slice of `RemoteTransport` a worker needs."""

    async def read_sensor(self) -> SensorReading: ...

    async def send_text(self, conversation_id: int, text: str) -> None: ...


@dataclass(frozen=True, slots=True)
class WorkerTimings:
    """Timer knobs for `ConversationWorker` (all delays in seconds)."""

    default_delay_seconds: float = 60.0
    alert_cooldown_seconds: float = 300.0
    inbox_size: int = 16


@dataclass(slots=True)
class ConversationWorker:
    """Watch the sensor on behalf of one chat until told to stop.

    API:
    - `await run()`: the watch loop; returns once terminated
    - `await send_control(text)`: enqueue a control message (FIFO)
    - `request_stop()`: enqueue `"stop"` and close the inbox; never blocks

    `threshold` and `current_delay_seconds` are only mutated by the task
    running `run()`.
    """

    conversation_id: int
    threshold: int
    transport: SensorAlertTransport
    timings: WorkerTimings = field(default_factory=WorkerTimings)

    current_delay_seconds: float = field(init=False)
    _inbox_send: MemoryObjectSendStream[str] = field(init=False, repr=False)
    _inbox_recv: MemoryObjectReceiveStream[str] = field(init=False, repr=False)
    _terminated: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self.current_delay_seconds = self.timings.default_delay_seconds
        self._inbox_send, self._inbox_recv = anyio.create_memory_object_stream[str](
            self.timings.inbox_size
        )

    def is_terminated(self) -> bool:
        return self._terminated

    async def send_control(self, message: str) -> bool:
        """Deliver `message` to the inbox.

        Returns `False` when the worker no longer accepts messages (stopped,
        or its task died).
        """

        try:
            await self._inbox_send.send(message)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            return False
        return True

    def request_stop(self) -> None:
        """Ask the worker to terminate without waiting for it.

        The inbox is closed after the stop message, so even if the message
        does not fit the worker still ends once it drains the inbox.
        """

        with suppress(
            anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError
        ):
            self._inbox_send.send_nowait(STOP_MESSAGE)
        self._inbox_send.close()

    async def run(self) -> None:
        """Run the watch loop.

        A `TransportError` from the sensor or from sending an alert ends this
        worker only; it is logged and not re-raised.
        """

        logger.info(
            "worker started chat_id=%s threshold=%s",
            self.conversation_id,
            self.threshold,
        )
        try:
            await self._watch()
        except TransportError as e:
            logger.error(
                "worker failed chat_id=%s: %s: %s",
                self.conversation_id,
                type(e).__name__,
                e,
            )
        finally:
            self._terminated = True
            self._inbox_recv.close()
            logger.info("worker terminated chat_id=%s", self.conversation_id)

    async def _watch(self) -> None:
        deadline = anyio.current_time() + self.current_delay_seconds
        while True:
            message: str | None = None
            with anyio.CancelScope(deadline=deadline):
                try:
                    message = await self._inbox_recv.receive()
                except anyio.EndOfStream:
                    return

            if message is None:
                try:
                    message = self._inbox_recv.receive_nowait()
                except anyio.WouldBlock:
                    pass
                except anyio.EndOfStream:
                    return

            if message is not None:
                if message == STOP_MESSAGE:
                    return
                sleep_seconds = SLEEP_DIRECTIVES.get(message)
                if sleep_seconds is not None:
                    self.current_delay_seconds = sleep_seconds
                    deadline = anyio.current_time() + sleep_seconds
                    logger.info(
                        "worker sleeping chat_id=%s seconds=%s",
                        self.conversation_id,
                        sleep_seconds,
                    )
                continue

            await self._check()
            deadline = anyio.current_time() + self.current_delay_seconds

    async def _check(self) -> None:
        reading = await self.transport.read_sensor()
        if reading.co2 > self.threshold:
            self.current_delay_seconds = self.timings.alert_cooldown_seconds
            logger.warning(
                "co2 alert chat_id=%s co2=%s threshold=%s",
                self.conversation_id,
                reading.co2,
                self.threshold,
            )
            await self.transport.send_text(self.conversation_id, alert_text(reading.co2))
        else:
            self.current_delay_seconds = self.timings.default_delay_seconds
