from __future__ import annotations

import inspect
import math
import numbers
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from ...core import metrics
from ...core.observability import EventKind, Observability
from ...core.realtime import RealTimeCoordinator, RealtimeTaskConfig
from ...shared.schemas import DropReason, Sample
from .errors import GeneratorExhausted, GeneratorFailure, UnknownChannel
from .generators import Generator

logger = structlog.get_logger(__name__)


@dataclass
class _Emitter:
    channel: str
    cadence_ms: Optional[float]
    generator: Optional[Generator]
    ticks: int = 0
    emitted: int = 0
    last_timestamp: Optional[float] = None
    stopped: bool = False


def _as_number(channel: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise GeneratorFailure(channel, f"expected a number, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise GeneratorFailure(channel, f"non-finite value {number}")
    return number


class SampleSource:
    """Produces timestamped samples for channels, one coordinator task per channel."""

    def __init__(
        self,
        coordinator: RealTimeCoordinator,
        on_sample: Callable[[Sample], Any],
        observability: Observability,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._coordinator = coordinator
        self._on_sample = on_sample
        self._observability = observability
        self._clock = clock
        self._emitters: Dict[str, _Emitter] = {}

    @staticmethod
    def task_name(channel: str) -> str:
        return f"channel:{channel}"

    def __contains__(self, channel: object) -> bool:
        return channel in self._emitters

    def start(self, channel: str, cadence_ms: Optional[float], generator: Optional[Generator]) -> None:
        """Begin emitting on ``channel``; without a generator the channel is fed through ``push``."""
        if channel in self._emitters:
            raise ValueError(f"Source for {channel} already started")
        if generator is not None and (cadence_ms is None or cadence_ms <= 0):
            raise ValueError("a periodic source needs a positive cadence")
        self._emitters[channel] = _Emitter(channel=channel, cadence_ms=cadence_ms, generator=generator)
        if generator is not None:
            assert cadence_ms is not None
            self._coordinator.register_task(
                RealtimeTaskConfig(name=self.task_name(channel), period_ms=cadence_ms, deadline_ms=cadence_ms),
                coroutine_factory=lambda: self.tick(channel),
            )
        logger.info("source_started", channel=channel, cadence_ms=cadence_ms, periodic=generator is not None)

    async def stop(self, channel: str) -> bool:
        """Halt emission; returns once no tick of the channel can emit any more."""
        emitter = self._emitters.pop(channel, None)
        if emitter is None:
            return False
        emitter.stopped = True
        await self._coordinator.unregister_task(self.task_name(channel))
        logger.info("source_stopped", channel=channel, ticks=emitter.ticks, emitted=emitter.emitted)
        return True

    def discard(self, channel: str) -> bool:
        """Release an externally fed channel; periodic sources go through ``stop``."""
        emitter = self._emitters.get(channel)
        if emitter is None or emitter.generator is not None:
            return False
        del self._emitters[channel]
        emitter.stopped = True
        logger.info("source_discarded", channel=channel, emitted=emitter.emitted)
        return True

    async def stop_all(self) -> None:
        for channel in list(self._emitters):
            await self.stop(channel)

    def is_running(self, channel: str) -> bool:
        emitter = self._emitters.get(channel)
        if emitter is None or emitter.generator is None:
            return False
        return self._coordinator.get_handle(self.task_name(channel)) is not None

    def sample_count(self, channel: str) -> int:
        emitter = self._emitters.get(channel)
        return emitter.emitted if emitter is not None else 0

    async def tick(self, channel: str) -> Optional[Sample]:
        """Run one tick now; the coordinator calls this on every period."""
        emitter = self._emitters.get(channel)
        if emitter is None or emitter.stopped or emitter.generator is None:
            return None
        index = emitter.ticks
        emitter.ticks += 1
        try:
            value = emitter.generator(index, self._clock())
            if inspect.isawaitable(value):
                value = await value
            number = _as_number(channel, value)
        except GeneratorExhausted as exc:
            logger.info("source_exhausted", channel=channel, ticks=index, reason=str(exc))
            emitter.generator = None
            await self._coordinator.unregister_task(self.task_name(channel))
            return None
        except Exception as exc:
            self._observability.emit(EventKind.generator_error, channel=channel, tick=index, error=str(exc))
            self._observability.emit(
                EventKind.sample_dropped,
                channel=channel,
                reason=DropReason.generator_error.value,
                tick=index,
            )
            return None
        # stop() may have run while the generator was awaited
        if emitter.stopped:
            return None
        return self._emit(emitter, number)

    def push(self, channel: str, value: float) -> Sample:
        """Emit an externally supplied value on ``channel``."""
        emitter = self._emitters.get(channel)
        if emitter is None:
            raise UnknownChannel(channel)
        try:
            number = _as_number(channel, value)
        except GeneratorFailure as exc:
            raise ValueError(exc.reason) from exc
        return self._emit(emitter, number)

    def _emit(self, emitter: _Emitter, value: float) -> Sample:
        timestamp = self._clock()
        if emitter.last_timestamp is not None and timestamp <= emitter.last_timestamp:
            timestamp = math.nextafter(emitter.last_timestamp, math.inf)
        sample = Sample(channel=emitter.channel, timestamp=timestamp, value=value, seq=emitter.emitted)
        emitter.emitted += 1
        emitter.last_timestamp = timestamp
        metrics.samples_emitted_counter(emitter.channel).inc()
        self._on_sample(sample)
        return sample
