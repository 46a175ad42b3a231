"""
Pytest configuration and fixtures.
"""
import asyncio
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from fanout.core.config import Settings
from fanout.core.event_bus import EventBus
from fanout.core.realtime import RealTimeCoordinator
from fanout.services.bridges.telemetry_bridge import TelemetryBridge


class FakeTransport:
    """In-memory transport that records what the writer sends."""

    def __init__(self, *, fail: bool = False, blocked: bool = False) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.fail = fail
        self.gate = asyncio.Event()
        if not blocked:
            self.gate.set()

    async def send(self, message: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("peer reset")
        await self.gate.wait()
        self.sent.append(message)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    @property
    def samples(self) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message["type"] == "sample"]

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return [message for message in self.sent if message["type"] == "error"]

    async def wait_for(self, count: int, timeout: float = 1.0) -> List[Dict[str, Any]]:
        async def _poll() -> None:
            while len(self.sent) < count:
                await asyncio.sleep(0.001)

        await asyncio.wait_for(_poll(), timeout=timeout)
        return self.sent


class ManualClock:
    """Deterministic wall clock for sample timestamps."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 5) -> None:
    """Give writer tasks a few loop iterations to flush."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        default_channels=[],
        queue_capacity=8,
        drain_timeout_ms=200,
        send_timeout_ms=500,
        prometheus_enabled=True,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def coordinator():
    coordinator = RealTimeCoordinator()
    await coordinator.start()
    yield coordinator
    await coordinator.stop()


@pytest_asyncio.fixture
async def bridge(settings, coordinator, clock):
    bridge = TelemetryBridge(settings, coordinator, EventBus(), clock=clock)
    yield bridge
    await bridge.shutdown()
