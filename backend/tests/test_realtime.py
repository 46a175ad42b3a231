"""Tests for the realtime coordinator."""
import asyncio

import pytest

from fanout.core.realtime import RealtimeTaskConfig, RealTimeCoordinator


def _config(name: str, period_ms: float = 10, priority: int = 0) -> RealtimeTaskConfig:
    return RealtimeTaskConfig(name=name, period_ms=period_ms, deadline_ms=period_ms * 5, priority=priority)


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


class TestRealTimeCoordinator:
    @pytest.mark.asyncio
    async def test_simultaneous_ticks_run_in_registration_order(self):
        coordinator = RealTimeCoordinator()
        order = []

        def factory(name):
            async def tick():
                order.append(name)

            return tick

        for name in ("b", "a", "c"):
            coordinator.register_task(_config(name), factory(name))
        await coordinator.start()
        await _wait_until(lambda: len(order) >= 3)
        await coordinator.stop()

        assert order[:3] == ["b", "a", "c"]

    @pytest.mark.asyncio
    async def test_priority_breaks_ties_before_registration_order(self):
        coordinator = RealTimeCoordinator()
        order = []

        def factory(name):
            async def tick():
                order.append(name)

            return tick

        coordinator.register_task(_config("low", priority=5), factory("low"))
        coordinator.register_task(_config("high", priority=0), factory("high"))
        await coordinator.start()
        await _wait_until(lambda: len(order) >= 2)
        await coordinator.stop()

        assert order[:2] == ["high", "low"]

    @pytest.mark.asyncio
    async def test_duplicate_registration_is_rejected(self, coordinator):
        async def tick():
            return None

        coordinator.register_task(_config("once"), tick)
        with pytest.raises(ValueError):
            coordinator.register_task(_config("once"), tick)

    @pytest.mark.asyncio
    async def test_unregister_waits_for_the_in_flight_tick(self, coordinator):
        gate = asyncio.Event()
        started = asyncio.Event()
        finished = []

        async def tick():
            started.set()
            await gate.wait()
            finished.append(True)

        coordinator.register_task(_config("slow"), tick)
        await asyncio.wait_for(started.wait(), timeout=1.0)

        unregister = asyncio.create_task(coordinator.unregister_task("slow"))
        await asyncio.sleep(0.01)
        assert not unregister.done()

        gate.set()
        assert await unregister is True
        assert finished == [True]
        assert coordinator.get_handle("slow") is None

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_its_schedule(self, coordinator):
        runs = []

        async def tick():
            runs.append(True)
            raise RuntimeError("boom")

        handle = coordinator.register_task(_config("flaky"), tick)
        await _wait_until(lambda: len(runs) >= 3)
        await coordinator.unregister_task("flaky")

        assert handle.runs >= 3
        assert handle.last_stats is not None

    @pytest.mark.asyncio
    async def test_unregister_unknown_task(self, coordinator):
        assert await coordinator.unregister_task("missing") is False

    @pytest.mark.asyncio
    async def test_stop_unregisters_everything(self):
        coordinator = RealTimeCoordinator()
        await coordinator.start()

        async def tick():
            return None

        coordinator.register_task(_config("a"), tick)
        coordinator.register_task(_config("b"), tick)
        await coordinator.stop()

        assert coordinator.task_names() == []
        assert coordinator.running is False
