import http.client
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field

import anyio
import pytest

from co2bot.config import Config
from co2bot.models import SensorReading
from co2bot.registry import WorkerRegistry
from co2bot.transport import RemoteTransport, TransportError
from co2bot.worker import WorkerTimings


@dataclass
class _FakeSensorTransport:
    co2: int = 100
    fail_reads: bool = False
    reads: int = 0
    sent: list[tuple[int, str]] = field(default_factory=list)

    async def read_sensor(self) -> SensorReading:
        self.reads += 1
        if self.fail_reads:
            raise TransportError("Sensor read failed: invalid JSON")
        return SensorReading(co2=self.co2)

    async def send_text(self, conversation_id: int, text: str) -> None:
        self.sent.append((conversation_id, text))


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.005)


_SLOW = WorkerTimings(default_delay_seconds=60, alert_cooldown_seconds=300)


@pytest.mark.anyio
async def test_start_twice_keeps_exactly_one_worker_with_latest_threshold() -> None:
    transport = _FakeSensorTransport()
    async with WorkerRegistry(transport=transport, timings=_SLOW) as registry:
        await registry.start(1, 500)
        first = await registry.get(1)
        await registry.start(1, 900)
        second = await registry.get(1)

        assert first is not None and second is not None
        assert second is not first
        assert second.threshold == 900
        assert await registry.keys() == [1]

        await _wait_until(first.is_terminated)
        assert second.is_terminated() is False


@pytest.mark.anyio
async def test_concurrent_starts_for_one_chat_register_a_single_worker() -> None:
    transport = _FakeSensorTransport()
    async with WorkerRegistry(transport=transport, timings=_SLOW) as registry:
        async with anyio.create_task_group() as tg:
            for threshold in range(100, 110):
                tg.start_soon(registry.start, 5, threshold)

        assert await registry.keys() == [5]
        worker = await registry.get(5)
        assert worker is not None
        assert worker.is_terminated() is False


@pytest.mark.anyio
async def test_stop_then_forward_has_no_effect() -> None:
    transport = _FakeSensorTransport(co2=5000)
    timings = WorkerTimings(default_delay_seconds=0.05, alert_cooldown_seconds=300)
    async with WorkerRegistry(transport=transport, timings=timings) as registry:
        await registry.start(1, 800)
        worker = await registry.get(1)
        assert worker is not None

        await registry.stop(1)
        await registry.forward(1, "/co2")

        assert await registry.has(1) is False
        await _wait_until(worker.is_terminated)
        await anyio.sleep(0.1)
        assert transport.reads == 0
        assert transport.sent == []


@pytest.mark.anyio
async def test_stop_and_forward_are_noops_for_unknown_chats() -> None:
    transport = _FakeSensorTransport()
    async with WorkerRegistry(transport=transport, timings=_SLOW) as registry:
        await registry.stop(42)
        await registry.forward(42, "/sleep 15 min")
        assert await registry.keys() == []


@pytest.mark.anyio
async def test_forward_delivers_sleep_directive_to_worker() -> None:
    transport = _FakeSensorTransport()
    async with WorkerRegistry(transport=transport, timings=_SLOW) as registry:
        await registry.start(3, 800)
        worker = await registry.get(3)
        assert worker is not None

        await registry.forward(3, "/sleep 2 hour")
        await _wait_until(lambda: worker.current_delay_seconds == 7200)
        assert transport.reads == 0


@pytest.mark.anyio
async def test_forward_to_dead_worker_is_dropped() -> None:
    transport = _FakeSensorTransport(fail_reads=True)
    timings = WorkerTimings(default_delay_seconds=0.01)
    async with WorkerRegistry(transport=transport, timings=timings) as registry:
        await registry.start(1, 800)
        worker = await registry.get(1)
        assert worker is not None
        await _wait_until(worker.is_terminated)

        await registry.forward(1, "/sleep 15 min")

        # A dead worker is replaced cleanly by the next start.
        transport.fail_reads = False
        await registry.start(1, 900)
        replacement = await registry.get(1)
        assert replacement is not None
        assert replacement.is_terminated() is False


@pytest.mark.anyio
async def test_exit_stops_workers_and_closes_registry() -> None:
    transport = _FakeSensorTransport()
    registry = WorkerRegistry(transport=transport, timings=_SLOW)
    async with registry:
        await registry.start(1, 800)
        await registry.start(2, 800)
        workers = [await registry.get(1), await registry.get(2)]

    assert all(w is not None and w.is_terminated() for w in workers)
    with pytest.raises(RuntimeError, match="WorkerRegistry is closed"):
        await registry.start(1, 800)


@pytest.mark.anyio
async def test_registry_requires_async_with() -> None:
    registry = WorkerRegistry(transport=_FakeSensorTransport(), timings=_SLOW)
    with pytest.raises(RuntimeError, match="must be entered"):
        await registry.start(1, 800)


@dataclass
class _BlockingSensorTransport:
    release: anyio.Event = field(default_factory=anyio.Event)
    reads: int = 0

    async def read_sensor(self) -> SensorReading:
        self.reads += 1
        await self.release.wait()
        return SensorReading(co2=100)

    async def send_text(self, conversation_id: int, text: str) -> None:
        return None


@pytest.mark.anyio
async def test_forward_into_full_inbox_does_not_block_other_chats() -> None:
    transport = _BlockingSensorTransport()
    timings = WorkerTimings(default_delay_seconds=0.01, inbox_size=1)
    async with WorkerRegistry(transport=transport, timings=timings) as registry:
        await registry.start(1, 800)
        worker = await registry.get(1)
        assert worker is not None
        await _wait_until(lambda: transport.reads == 1)

        # The worker is stuck in a sensor call; the single slot fills up.
        await registry.forward(1, "/sleep 15 min")
        async with anyio.create_task_group() as tg:
            tg.start_soon(registry.forward, 1, "/sleep 30 min")
            await anyio.sleep(0.02)

            with anyio.fail_after(1):
                await registry.start(2, 800)
                await registry.stop(2)
            assert await registry.keys() == [1]

            transport.release.set()

        await _wait_until(lambda: worker.current_delay_seconds == 1800)


class _SensorResponse:
    def __init__(self, body: bytes, *, truncated: bool) -> None:
        self._body = body
        self._truncated = truncated

    def __enter__(self) -> "_SensorResponse":
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def read(self) -> bytes:
        if self._truncated:
            raise http.client.IncompleteRead(self._body[:9], len(self._body) - 9)
        return self._body


@pytest.mark.anyio
async def test_truncated_sensor_response_ends_only_that_worker(monkeypatch) -> None:
    state = {"truncated": True}

    def fake_urlopen(request: urllib.request.Request, timeout: float):
        return _SensorResponse(b'{"co2": 100}', truncated=state["truncated"])

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    transport = RemoteTransport(
        config=Config(bot_token="123:abc", sensor_uri="http://sensor.local/data")
    )
    timings = WorkerTimings(default_delay_seconds=0.01)

    async with WorkerRegistry(transport=transport, timings=timings) as registry:
        await registry.start(1, 800)
        worker = await registry.get(1)
        assert worker is not None
        await _wait_until(worker.is_terminated)

        state["truncated"] = False
        await registry.start(1, 900)
        replacement = await registry.get(1)
        assert replacement is not None
        await anyio.sleep(0.05)
        assert replacement.is_terminated() is False
