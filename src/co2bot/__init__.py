"""Telegram CO2 monitor.

This package polls the Telegram Bot API `getUpdates` endpoint and runs one
CO2 watcher per chat that asked for monitoring.

Design notes / boundaries:
- Polling only (no webhook). The consumed `update_id` cursor is in-memory.
- Each monitored chat gets one `ConversationWorker` task that samples the
  sensor on a timer and sends an alert when CO2 exceeds the chat's
  threshold. `/sleep ...` directives change the timer at runtime.
- `WorkerRegistry` guarantees at most one worker per chat; `/start` replaces
  the existing worker instead of adding a second one.
- Remote calls are never retried. A failure while polling or dispatching
  stops the process; a failure inside a worker stops that worker only.
"""

from __future__ import annotations

from .cli import main, run
from .config import Config
from .dispatcher import Dispatcher, parse_threshold
from .models import InboundEvent, SensorReading, update_to_event
from .registry import WorkerRegistry
from .runner import dispatch_events, run_forever, serve
from .transport import RemoteTransport, TransportError
from .updates import UpdateSource
from .worker import (
    SLEEP_DIRECTIVES,
    STOP_MESSAGE,
    ConversationWorker,
    WorkerTimings,
)

__all__ = [
    "SLEEP_DIRECTIVES",
    "STOP_MESSAGE",
    "Config",
    "ConversationWorker",
    "Dispatcher",
    "InboundEvent",
    "RemoteTransport",
    "SensorReading",
    "TransportError",
    "UpdateSource",
    "WorkerRegistry",
    "WorkerTimings",
    "dispatch_events",
    "main",
    "parse_threshold",
    "run",
    "run_forever",
    "serve",
    "update_to_event",
]
