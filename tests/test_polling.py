"""
Tests for the event hub, the interval scheduler and per-device polling.
"""

import asyncio

import pytest

from fieldgate.common.exceptions import ConfigurationError, DeviceNotFoundError
from fieldgate.common.scheduler import ScheduledLoop
from fieldgate.services.device.device import Device
from fieldgate.services.device.health import HealthTracker
from fieldgate.services.polling.events import ErrorEvent, EventHub, PollEvent
from fieldgate.services.polling.service import PollingService

from conftest import InstrumentedTransport


def event(device_id="d1", seq=0):
    return PollEvent(device_id=device_id, device_name=f"#{seq}", readings=[])


@pytest.fixture
def polling(registry, hub):
    return PollingService(registry, hub, HealthTracker())


@pytest.fixture
async def registered(registry, device):
    await registry.register(device)
    return device


class TestEventHub:
    """Bounded per-device channels"""

    async def test_drain_dispatches_in_order(self, hub, collected):
        for seq in range(3):
            hub.publish(event(seq=seq))
        assert await hub.drain() == 3
        assert [e.device_name for e in collected] == ["#0", "#1", "#2"]

    async def test_full_channel_drops_oldest(self, hub, collected):
        for seq in range(12):
            hub.publish(event(seq=seq))
        assert hub.pending == 10
        await hub.drain()
        assert [e.device_name for e in collected] == [f"#{i}" for i in range(2, 12)]
        assert hub.get_stats()["dropped"] == 2

    async def test_channels_are_independent(self, hub, collected):
        for seq in range(12):
            hub.publish(event("busy", seq))
        hub.publish(event("quiet", 99))
        await hub.drain()
        assert [e.device_name for e in collected if e.device_id == "quiet"] == ["#99"]

    async def test_async_handler(self, hub):
        seen = []

        async def handler(evt):
            await asyncio.sleep(0)
            seen.append(evt)

        hub.subscribe(handler)
        hub.publish(event())
        await hub.drain()
        assert len(seen) == 1

    async def test_failing_handler_does_not_block_others(self, hub, collected):
        def broken(evt):
            raise RuntimeError("sink down")

        hub.subscribe(broken)
        hub.publish(event())
        await hub.drain()
        assert len(collected) == 1
        assert hub.get_stats()["handler_errors"] == 1

    async def test_consumer_task(self, hub, collected):
        await hub.start()
        hub.publish(event())
        await asyncio.sleep(0.01)
        await hub.stop()
        assert len(collected) == 1

    async def test_stop_drains_pending(self, hub, collected):
        await hub.start()
        for seq in range(5):
            hub.publish(event(seq=seq))
        await hub.stop()
        assert len(collected) == 5


class TestScheduledLoop:
    """Non-overlapping fixed-interval ticks"""

    async def test_runs_immediately(self):
        calls = []

        async def tick():
            calls.append(1)

        loop = ScheduledLoop(10, tick, name="t")
        await loop.start()
        await asyncio.sleep(0.02)
        loop.stop()
        await loop.wait_stopped()
        assert calls == [1]

    async def test_slow_callback_skips_ticks(self):
        active = 0
        overlap = False

        async def slow():
            nonlocal active, overlap
            active += 1
            overlap = overlap or active > 1
            await asyncio.sleep(0.12)
            active -= 1

        loop = ScheduledLoop(0.05, slow, name="slow")
        await loop.start()
        await asyncio.sleep(0.3)
        loop.stop()
        await loop.wait_stopped()

        assert not overlap
        assert loop.skipped_count > 0

    async def test_stop_lets_callback_finish(self):
        finished = []

        async def work():
            await asyncio.sleep(0.05)
            finished.append(True)

        loop = ScheduledLoop(10, work, name="w")
        await loop.start()
        await asyncio.sleep(0.01)
        assert loop.in_callback
        loop.stop()
        loop.stop()
        await loop.wait_stopped()
        assert finished == [True]

    async def test_callback_error_keeps_loop_alive(self):
        calls = []

        async def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        loop = ScheduledLoop(0.02, flaky, name="f")
        await loop.start()
        await asyncio.sleep(0.07)
        loop.stop()
        await loop.wait_stopped()
        assert len(calls) >= 2
        assert loop.get_stats()["error_count"] == len(calls)

    def test_invalid_interval(self):
        async def noop():
            pass

        with pytest.raises(ValueError):
            ScheduledLoop(0, noop)


class TestPollingService:
    """Per-device poll jobs"""

    async def test_start_publishes_events(self, polling, registered, hub, collected, transport):
        transport.registers[(3, 0)] = 2300

        await polling.start(registered.id, 1000)
        await asyncio.sleep(0.05)
        await polling.stop(registered.id, wait=True)
        await hub.drain()

        polls = [e for e in collected if isinstance(e, PollEvent)]
        assert len(polls) == 1
        assert polls[0].readings[0].value == 230.0
        assert polls[0].to_dict()["deviceId"] == "dev-1"

    async def test_unknown_device(self, polling):
        with pytest.raises(DeviceNotFoundError):
            await polling.start("ghost", 1000)

    async def test_interval_minimum(self, polling, registered):
        with pytest.raises(ConfigurationError):
            await polling.start(registered.id, 10)

    async def test_restart_changes_interval(self, polling, registered):
        first = await polling.start(registered.id, 1000)
        second = await polling.start(registered.id, 500)
        assert first is second
        assert second.interval_ms == 500
        assert second.loop.interval == 0.5
        assert polling.status()["active_jobs"] == 1
        await polling.stop_all()

    async def test_stop_is_idempotent(self, polling, registered):
        await polling.start(registered.id, 1000)
        assert await polling.stop(registered.id, wait=True) is True
        assert await polling.stop(registered.id) is False
        assert not polling.is_polling(registered.id)
        assert polling.status(registered.id) == {"device_id": "dev-1", "running": False}

    async def test_total_failure_publishes_error_event(self, polling, registered, hub, collected, transport):
        transport.offline = True

        await polling.start(registered.id, 1000)
        await asyncio.sleep(0.05)
        await polling.stop(registered.id, wait=True)
        await hub.drain()

        errors = [e for e in collected if isinstance(e, ErrorEvent)]
        assert len(errors) == 1
        assert errors[0].kind == "ConnectionError"

    async def test_partial_failure_is_not_an_error_event(self, polling, registered, hub, collected, transport):
        transport.invalid.add(1)

        await polling.start(registered.id, 1000)
        await asyncio.sleep(0.05)
        await polling.stop(registered.id, wait=True)
        await hub.drain()

        assert not any(isinstance(e, ErrorEvent) for e in collected)
        job_health = polling._health.get(registered.id)
        assert job_health.is_online

    async def test_slow_device_skips_ticks(self, polling, registry, hub, device_config):
        device = Device(device_config, InstrumentedTransport(delay=0.12))
        await registry.register(device)

        job = await polling.start(device.id, 100)
        await asyncio.sleep(0.35)
        await polling.stop(device.id, wait=True)

        assert device.transport.max_active == 1
        assert job.skipped_ticks > 0

    async def test_job_stops_when_device_removed(self, polling, registry, registered):
        await polling.start(registered.id, 100)
        await asyncio.sleep(0.02)
        await registry.unregister(registered.id)
        await asyncio.sleep(0.2)
        assert not polling.is_polling(registered.id)
