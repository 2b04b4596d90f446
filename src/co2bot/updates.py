"""Ordered, deduplicated stream of inbound chat events.

`UpdateSource.subscribe()` turns repeated `getUpdates` long-polls into one
lazy, infinite async iterator.

Design notes / boundaries:
- The cursor (`offset`) is the smallest `update_id` not yet handed out. It
  starts at 0, is tracked in memory only and only ever increases.
  - Restarts may reprocess updates that are still pending server-side.
- The server is asked for updates from `offset` onwards, but that floor is
  not trusted: any update with `update_id < offset` is dropped client-side.
- Each event is yielded before the next one in the batch is looked at, and
  the next long-poll only starts once the consumer has taken the whole batch.
  There is no buffering beyond the batch just fetched.
- Transport errors and malformed updates propagate out of the iterator. There
  is exactly one ingestion loop, so this is fatal to the process.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from rich import print

from .models import InboundEvent, extract_update_id, update_to_event
from .transport import TransportError

logger = logging.getLogger(__name__)


class EventFetcher(Protocol):
    """The slice of `RemoteTransport` the update source needs."""

    async def fetch_events(
        self,
        *,
        offset_floor: int,
        limit: int = 0,
        timeout_seconds: int,
    ) -> list[dict[str, Any]]: ...


@dataclass(slots=True)
class UpdateSource:
    """Single-subscriber cursor over the remote update log."""

    transport: EventFetcher
    timeout_seconds: int = 60
    limit: int = 0

    _offset: int = field(default=0, init=False)
    _subscribed: bool = field(default=False, init=False, repr=False)

    @property
    def offset(self) -> int:
        return self._offset

    def subscribe(self) -> AsyncIterator[InboundEvent]:
        """Start consuming the update log.

        Raises:
            RuntimeError: If called more than once; a second subscription
                would poll the same remote offset twice.
        """

        if self._subscribed:
            raise RuntimeError("UpdateSource is already subscribed")
        self._subscribed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[InboundEvent]:
        while True:
            updates = await self.transport.fetch_events(
                offset_floor=self._offset,
                limit=self.limit,
                timeout_seconds=self.timeout_seconds,
            )
            if updates:
                print(
                    "[cyan]telegram recv[/cyan] "
                    + f"updates={len(updates)} offset={self._offset}"
                )

            for update in updates:
                event = self._accept(update)
                if event is not None:
                    yield event

    def _accept(self, update: dict[str, Any]) -> InboundEvent | None:
        """Advance the cursor past `update` and return its event, if any.

        Returns `None` for stale updates (already consumed) and for updates
        that carry no chat message; only the latter move the cursor.
        """

        update_id = extract_update_id(update)
        if update_id is None:
            raise TransportError(
                f"Telegram getUpdates failed: update without integer update_id: {update!r}"
            )
        if update_id < self._offset:
            logger.debug("dropping stale update_id=%s offset=%s", update_id, self._offset)
            return None

        self._offset = update_id + 1
        event = update_to_event(update)
        if event is None:
            logger.debug("skipping non-message update_id=%s", update_id)
        return event
