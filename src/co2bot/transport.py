"""Outbound calls to the Telegram Bot API and the CO2 sensor.

All calls are stdlib `urllib` requests executed in a worker thread so the
polling loop and conversation workers stay async-friendly. There is no retry
logic: any network error, HTTP error or malformed payload raises
`TransportError`, and the caller decides whether that is fatal.
"""

from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

import anyio.to_thread as to_thread
from pydantic import ValidationError

from .config import Config
from .models import SensorReading


class TransportError(RuntimeError):
    """Raised when a remote call fails or returns an invalid payload."""


def _decode_json(raw: bytes, *, what: str) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TransportError(f"{what} failed: invalid JSON") from e


def _unwrap_envelope(payload: Any, *, what: str) -> Any:
    """Return `result` from a Bot API `{ok, result}` envelope."""

    if not isinstance(payload, dict) or payload.get("ok") is not True:
        desc = payload.get("description") if isinstance(payload, dict) else None
        raise TransportError(
            f"{what} failed" + (f": {desc}" if isinstance(desc, str) and desc else "")
        )
    if "result" not in payload:
        raise TransportError(f"{what} failed: missing result")
    return payload["result"]


@dataclass(slots=True)
class RemoteTransport:
    """Minimal Bot API + sensor client.

    Stateless apart from the injected `Config`.
    """

    config: Config

    def _method_url(self, method: str) -> str:
        # Never log/print this URL; it embeds the bot token.
        return f"{self.config.api_base}/bot{self.config.bot_token}/{method}"

    def _urlopen(
        self, request: urllib.request.Request, *, timeout: float, what: str
    ) -> bytes:
        try:
            with urllib.request.urlopen(request, timeout=timeout) as resp:
                return resp.read()
        except urllib.error.HTTPError as e:  # pragma: no cover (network dependent)
            raise TransportError(f"{what} failed: HTTP {e.code}") from e
        except urllib.error.URLError as e:  # pragma: no cover (network dependent)
            raise TransportError(f"{what} failed: network error") from e
        except OSError as e:  # pragma: no cover (timeouts, resets mid-read)
            raise TransportError(f"{what} failed: {type(e).__name__}") from e
        except http.client.HTTPException as e:
            # Truncated bodies and malformed status lines.
            raise TransportError(f"{what} failed: {type(e).__name__}") from e

    def _get_updates_sync(
        self,
        *,
        offset: int,
        limit: int,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {}
        # Zero means "let the server decide" for all three knobs.
        if offset:
            params["offset"] = offset
        if limit:
            params["limit"] = limit
        if timeout_seconds:
            params["timeout"] = timeout_seconds

        url = self._method_url("getUpdates")
        if params:
            url += "?" + urllib.parse.urlencode(params)
        request = urllib.request.Request(url, method="GET")

        # Client timeout should exceed server long-poll timeout.
        client_timeout = max(
            self.config.request_timeout_seconds, timeout_seconds + 15
        )
        raw = self._urlopen(request, timeout=client_timeout, what="Telegram getUpdates")
        payload = _decode_json(raw, what="Telegram getUpdates")
        result = _unwrap_envelope(payload, what="Telegram getUpdates")
        if not isinstance(result, list):
            raise TransportError("Telegram getUpdates failed: missing result list")

        updates: list[dict[str, Any]] = []
        for item in result:
            if not isinstance(item, dict):
                raise TransportError(
                    f"Telegram getUpdates failed: non-object update {item!r}"
                )
            updates.append(item)
        return updates

    async def fetch_events(
        self,
        *,
        offset_floor: int,
        limit: int = 0,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]:
        """Long-poll `getUpdates` and return raw update dicts in server order."""

        return await to_thread.run_sync(
            lambda: self._get_updates_sync(
                offset=offset_floor, limit=limit, timeout_seconds=timeout_seconds
            )
        )

    def _send_message_sync(
        self,
        *,
        chat_id: int,
        text: str,
        reply_markup: dict[str, Any] | None = None,
    ) -> None:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup is not None:
            params["reply_markup"] = json.dumps(reply_markup, separators=(",", ":"))

        data = urllib.parse.urlencode(params).encode("utf-8")
        request = urllib.request.Request(
            self._method_url("sendMessage"),
            data=data,
            method="POST",
        )
        request.add_header("Content-Type", "application/x-www-form-urlencoded")
        raw = self._urlopen(
            request,
            timeout=self.config.request_timeout_seconds,
            what="Telegram sendMessage",
        )
        # The body is discarded, but it must still be a valid response.
        _unwrap_envelope(
            _decode_json(raw, what="Telegram sendMessage"),
            what="Telegram sendMessage",
        )

    async def send_text(self, conversation_id: int, text: str) -> None:
        """Send a plain text message to a chat."""

        # Telegram rejects NUL-containing strings.
        safe_text = text.replace("\x00", "\ufffd")
        await to_thread.run_sync(
            lambda: self._send_message_sync(chat_id=conversation_id, text=safe_text)
        )

    async def send_keyboard(
        self,
        conversation_id: int,
        prompt_text: str,
        keyboard: dict[str, Any],
    ) -> None:
        """Send a message with an opaque `reply_markup` payload attached."""

        await to_thread.run_sync(
            lambda: self._send_message_sync(
                chat_id=conversation_id, text=prompt_text, reply_markup=keyboard
            )
        )

    def _get_me_sync(self) -> dict[str, Any]:
        request = urllib.request.Request(self._method_url("getMe"), method="GET")
        raw = self._urlopen(
            request,
            timeout=self.config.request_timeout_seconds,
            what="Telegram getMe",
        )
        result = _unwrap_envelope(
            _decode_json(raw, what="Telegram getMe"), what="Telegram getMe"
        )
        if not isinstance(result, dict):
            raise TransportError("Telegram getMe failed: missing result dict")
        return result

    async def get_me(self) -> dict[str, Any]:
        """Fetch bot metadata via `getMe`."""

        return await to_thread.run_sync(self._get_me_sync)

    def _read_sensor_sync(self) -> SensorReading:
        request = urllib.request.Request(self.config.sensor_uri, method="GET")
        raw = self._urlopen(
            request,
            timeout=self.config.request_timeout_seconds,
            what="Sensor read",
        )
        payload = _decode_json(raw, what="Sensor read")
        try:
            return SensorReading.model_validate(payload)
        except ValidationError as e:
            raise TransportError(f"Sensor read failed: malformed payload: {e}") from e

    async def read_sensor(self) -> SensorReading:
        """Sample the sensor once."""

        return await to_thread.run_sync(self._read_sensor_sync)
