"""Wire-level models shared by the transport, update source and workers.

Keep these types free of I/O so they can be imported anywhere without
creating import cycles.
"""

from __future__ import annotations

from typing import Any, Final

from pydantic import BaseModel, ConfigDict, model_validator


class InboundEvent(BaseModel):
    """A chat message taken from the update log.

    `sequence_id` is Telegram's `update_id`; `conversation_id` is the chat id.
    """

    model_config = ConfigDict(frozen=True)

    sequence_id: int
    conversation_id: int
    text: str = ""


# Sensor firmware emits short keys (`pres`, `ptemp`, ...); newer builds emit
# long camelCase keys. Both are matched case-insensitively.
_SENSOR_KEY_ALIASES: Final[dict[str, str]] = {
    "pres": "pressure",
    "pressure": "pressure",
    "ptemp": "pressure_temp",
    "pressuretemp": "pressure_temp",
    "pressure_temp": "pressure_temp",
    "temp": "temperature",
    "temperature": "temperature",
    "hum": "humidity",
    "humidity": "humidity",
    "co2": "co2",
}


class SensorReading(BaseModel):
    """One sample from the CO2 sensor. Only `co2` is required."""

    model_config = ConfigDict(frozen=True)

    pressure: float | None = None
    pressure_temp: float | None = None
    temperature: float | None = None
    humidity: float | None = None
    co2: int

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            if not isinstance(key, str):
                continue
            field = _SENSOR_KEY_ALIASES.get(key.casefold())
            if field is not None:
                normalized[field] = value
        return normalized


def extract_update_id(update: dict[str, Any]) -> int | None:
    """Extract `update_id` from a Telegram update dict (or return `None`)."""

    update_id = update.get("update_id")
    # `bool` is an `int` subclass; never treat it as an id.
    if isinstance(update_id, int) and not isinstance(update_id, bool):
        return update_id
    return None


def extract_message(update: dict[str, Any]) -> dict[str, Any] | None:
    """Return the plain `message` payload of an update, if any."""

    message = update.get("message")
    if isinstance(message, dict):
        return message
    return None


def update_to_event(update: dict[str, Any]) -> InboundEvent | None:
    """Build an `InboundEvent` from a Telegram update.

    Returns `None` for updates that are not chat messages (edited messages,
    callback queries, channel posts, ...) or whose chat id is missing. The
    caller is expected to have validated `update_id` already.
    """

    update_id = extract_update_id(update)
    message = extract_message(update)
    if update_id is None or message is None:
        return None

    chat = message.get("chat")
    chat_id = chat.get("id") if isinstance(chat, dict) else None
    if not isinstance(chat_id, int) or isinstance(chat_id, bool):
        return None

    text = message.get("text")
    return InboundEvent(
        sequence_id=update_id,
        conversation_id=chat_id,
        text=text if isinstance(text, str) else "",
    )
