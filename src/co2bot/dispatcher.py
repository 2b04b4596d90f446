"""Command routing for inbound chat events.

Commands:
- `/start`: ask for a threshold, then start watching with it
- `/stop`: stop watching
- `/co2`: reply with the current reading
- `/sleep`: show the sleep keyboard
- `/sleep <n> min|hour|hours`: forward to the chat's worker
- `/help`: usage

While a chat is awaiting a threshold, any non-command text is parsed as the
threshold. Invalid input is answered with a retry prompt and the chat keeps
awaiting. Sending another `/command` abandons the prompt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Final, Protocol

from .models import InboundEvent, SensorReading
from .registry import WorkerRegistry
from .worker import SLEEP_DIRECTIVES

logger = logging.getLogger(__name__)

MAX_THRESHOLD: Final[int] = 10000

_SLEEP_RE: Final[re.Pattern[str]] = re.compile(r"/sleep\s(\d+)\s(min|hours?)")
_INTEGER_RE: Final[re.Pattern[str]] = re.compile(r"[+-]?\d+")

HELP_TEXT: Final[str] = (
    "Usage:\n"
    "/start - Monitor the level of co2\n"
    "/stop - Stop monitoring\n"
    "/sleep - Disable for a while\n"
    "/co2 - Show current CO2 value\n"
    "/help - Show help"
)
ENTER_THRESHOLD_TEXT: Final[str] = "Enter maximum CO2 value"
NOT_AN_INTEGER_TEXT: Final[str] = "Integer expected. Try again."
NOT_POSITIVE_TEXT: Final[str] = "Expected value more than 0. Try again."
TOO_LARGE_TEXT: Final[str] = f"Value can`t be more than {MAX_THRESHOLD}. Try again."
SLEEP_PROMPT_TEXT: Final[str] = "Select sleep time"

SLEEP_KEYBOARD: Final[dict[str, Any]] = {
    "keyboard": [[directive] for directive in SLEEP_DIRECTIVES],
    "one_time_keyboard": True,
}


class ChatTransport(Protocol):
    """The slice of `RemoteTransport` the dispatcher needs."""

    async def send_text(self, conversation_id: int, text: str) -> None: ...

    async def send_keyboard(
        self,
        conversation_id: int,
        prompt_text: str,
        keyboard: dict[str, Any],
    ) -> None: ...

    async def read_sensor(self) -> SensorReading: ...


def parse_threshold(text: str) -> int | str:
    """Parse a threshold reply.

    Returns the threshold, or the user-facing error text.
    """

    raw = text.strip()
    if not _INTEGER_RE.fullmatch(raw):
        return NOT_AN_INTEGER_TEXT
    value = int(raw)
    if value <= 0:
        return NOT_POSITIVE_TEXT
    if value > MAX_THRESHOLD:
        return TOO_LARGE_TEXT
    return value


def is_sleep_command(text: str) -> bool:
    return _SLEEP_RE.match(text) is not None


@dataclass(slots=True)
class Dispatcher:
    """Route each event to the registry or answer it directly.

    Transport errors propagate to the caller.
    """

    transport: ChatTransport
    registry: WorkerRegistry

    awaiting_threshold: set[int] = field(default_factory=set, init=False)

    async def handle(self, event: InboundEvent) -> None:
        chat_id = event.conversation_id
        text = event.text

        if chat_id in self.awaiting_threshold:
            if not text.startswith("/"):
                await self._handle_threshold_reply(chat_id, text)
                return
            self.awaiting_threshold.discard(chat_id)

        if text == "/start":
            await self.transport.send_text(chat_id, ENTER_THRESHOLD_TEXT)
            self.awaiting_threshold.add(chat_id)
        elif text == "/stop":
            await self.registry.stop(chat_id)
        elif text == "/co2":
            reading = await self.transport.read_sensor()
            await self.transport.send_text(chat_id, f"CO2 is {reading.co2}")
        elif text == "/sleep":
            await self.transport.send_keyboard(
                chat_id, SLEEP_PROMPT_TEXT, SLEEP_KEYBOARD
            )
        elif is_sleep_command(text):
            await self.registry.forward(chat_id, text)
        elif text == "/help":
            await self.transport.send_text(chat_id, HELP_TEXT)
        else:
            logger.debug("ignoring chat_id=%s text=%r", chat_id, text[:50])

    async def _handle_threshold_reply(self, chat_id: int, text: str) -> None:
        parsed = parse_threshold(text)
        if isinstance(parsed, str):
            await self.transport.send_text(chat_id, parsed)
            return

        self.awaiting_threshold.discard(chat_id)
        await self.transport.send_text(chat_id, f"Start watch CO2 less than {parsed}")
        await self.registry.start(chat_id, parsed)
