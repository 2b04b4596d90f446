"""Registry of active conversation workers.

`WorkerRegistry` owns a mapping of chat ids to `ConversationWorker` instances
and the task group that hosts their loops. It is an async context manager:
entering opens the task group, exiting stops every worker and cancels
whatever is still running.
"""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Self

import anyio
from anyio.abc import TaskGroup

from .worker import ConversationWorker, SensorAlertTransport, WorkerTimings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRegistry:
    """At most one `ConversationWorker` per chat id.

    Concurrency:
        `start`, `stop` and the lookup in `forward` are serialized with a
        single lock so two concurrent `start` calls for one chat can never
        register two workers. `forward` delivers after releasing the lock.
        Stopping is "send stop and forget": the caller never waits for the
        worker's task to exit.
    """

    transport: SensorAlertTransport
    timings: WorkerTimings = field(default_factory=WorkerTimings)

    _workers: dict[int, ConversationWorker] = field(default_factory=dict, init=False)
    _lock: anyio.Lock = field(default_factory=anyio.Lock, init=False, repr=False)
    _task_group: TaskGroup | None = field(default=None, init=False, repr=False)
    _exit_stack: AsyncExitStack | None = field(default=None, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)

    async def __aenter__(self) -> Self:
        if self._exit_stack is not None or self._closed:
            raise RuntimeError("WorkerRegistry cannot be entered twice")
        stack = AsyncExitStack()
        self._task_group = await stack.enter_async_context(anyio.create_task_group())
        self._exit_stack = stack
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool | None:
        stack = self._exit_stack
        task_group = self._task_group
        self._exit_stack = None
        try:
            # Shielded: exiting is often caused by cancellation.
            with anyio.CancelScope(shield=True):
                await self.close()
        finally:
            self._task_group = None
            if task_group is not None:
                task_group.cancel_scope.cancel()
        if stack is None:
            return None
        return await stack.__aexit__(exc_type, exc, tb)

    def _require_open(self) -> TaskGroup:
        if self._closed:
            raise RuntimeError("WorkerRegistry is closed")
        if self._task_group is None:
            raise RuntimeError("WorkerRegistry must be entered with `async with`")
        return self._task_group

    async def start(self, conversation_id: int, threshold: int) -> None:
        """Replace any worker for `conversation_id` with a fresh one."""

        async with self._lock:
            task_group = self._require_open()
            self._stop_locked(conversation_id)

            worker = ConversationWorker(
                conversation_id=conversation_id,
                threshold=threshold,
                transport=self.transport,
                timings=self.timings,
            )
            self._workers[conversation_id] = worker
            task_group.start_soon(
                worker.run, name=f"co2bot-worker-{conversation_id}"
            )

    async def stop(self, conversation_id: int) -> None:
        """Request stop and unregister; no-op when nothing is registered."""

        async with self._lock:
            self._require_open()
            self._stop_locked(conversation_id)

    async def forward(self, conversation_id: int, text: str) -> None:
        """Deliver `text` to the worker's inbox; dropped when there is none."""

        async with self._lock:
            self._require_open()
            worker = self._workers.get(conversation_id)
        if worker is None:
            return
        # Sent outside the lock: a full inbox waits on this worker only.
        # A stop racing in closes the inbox and the message is dropped.
        if not await worker.send_control(text):
            logger.debug(
                "dropped control message for dead worker chat_id=%s",
                conversation_id,
            )

    async def has(self, conversation_id: int) -> bool:
        async with self._lock:
            return conversation_id in self._workers

    async def keys(self) -> list[int]:
        async with self._lock:
            return sorted(self._workers)

    async def get(self, conversation_id: int) -> ConversationWorker | None:
        """Return the registered worker handle (mainly for introspection)."""

        async with self._lock:
            return self._workers.get(conversation_id)

    async def close(self) -> None:
        """Stop all workers and refuse further operations (idempotent)."""

        async with self._lock:
            if self._closed:
                return
            self._closed = True
            workers = list(self._workers.values())
            self._workers.clear()

        for worker in workers:
            worker.request_stop()

    def _stop_locked(self, conversation_id: int) -> None:
        worker = self._workers.pop(conversation_id, None)
        if worker is not None:
            worker.request_stop()
            logger.info("worker stop requested chat_id=%s", conversation_id)
