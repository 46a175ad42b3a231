from __future__ import annotations

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, Field

from . import metrics

logger = structlog.get_logger(__name__)


class RealtimeTaskConfig(BaseModel):
    name: str
    period_ms: float = Field(gt=0)
    deadline_ms: float = Field(gt=0)
    max_jitter_ms: float = Field(default=1.0)
    priority: int = Field(default=0, description="Lower value = higher priority")

    @property
    def period_seconds(self) -> float:
        return self.period_ms / 1000.0

    @property
    def deadline_seconds(self) -> float:
        return self.deadline_ms / 1000.0

    @property
    def max_jitter_seconds(self) -> float:
        return self.max_jitter_ms / 1000.0


@dataclass
class RealtimeTaskStats:
    jitter_ms: float
    latency_ms: float
    deadline_missed: bool


@dataclass
class RealtimeTaskHandle:
    config: RealtimeTaskConfig
    coroutine_factory: Callable[[], Awaitable[None]]
    next_run: float
    ordinal: int
    cancelled: bool = False
    runs: int = 0
    last_stats: Optional[RealtimeTaskStats] = None
    in_flight: Optional[asyncio.Task[None]] = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True


class RealTimeCoordinator:
    """Single scheduling timeline for every periodic tick in the process.

    Ticks due at the same instant run in (priority, registration order) so a
    run is deterministic.
    """

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: list[tuple[float, int, int, RealtimeTaskHandle]] = []
        self._ordinals = itertools.count()
        self._handles: Dict[str, RealtimeTaskHandle] = {}
        self._wakeup = asyncio.Event()
        self._scheduler_task: Optional[asyncio.Task[None]] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._running = True
        self._scheduler_task = self._loop.create_task(self._schedule_loop())
        now = self._loop.time()
        for handle in self._handles.values():
            handle.next_run = now + handle.config.period_seconds
            self._push(handle)
        logger.info("realtime_coordinator_started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._wakeup.set()
        for name in list(self._handles):
            await self.unregister_task(name)
        if self._scheduler_task:
            await self._scheduler_task
            self._scheduler_task = None
        self._queue.clear()
        logger.info("realtime_coordinator_stopped")

    def register_task(
        self,
        config: RealtimeTaskConfig,
        coroutine_factory: Callable[[], Awaitable[None]],
    ) -> RealtimeTaskHandle:
        if config.name in self._handles:
            raise ValueError(f"Task {config.name} already registered")
        handle = RealtimeTaskHandle(
            config=config,
            coroutine_factory=coroutine_factory,
            next_run=0.0,
            ordinal=next(self._ordinals),
        )
        self._handles[config.name] = handle
        if self._running and self._loop is not None:
            handle.next_run = self._loop.time() + config.period_seconds
            self._push(handle)
            self._wakeup.set()
        logger.info("rt_task_registered", task=config.name, period_ms=config.period_ms)
        return handle

    async def unregister_task(self, task_name: str) -> bool:
        """Cancel a task and wait for a tick already in flight to finish.

        Once this returns, no tick of the task is running or will run.
        """
        handle = self._handles.pop(task_name, None)
        if handle is None:
            return False
        handle.cancel()
        in_flight = handle.in_flight
        if in_flight is not None and not in_flight.done() and in_flight is not asyncio.current_task():
            await asyncio.wait({in_flight})
        logger.info("rt_task_unregistered", task=task_name, runs=handle.runs)
        return True

    async def _schedule_loop(self) -> None:
        assert self._loop is not None
        while self._running:
            if not self._queue:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue

            next_run, _, _, handle = self._queue[0]
            now = self._loop.time()
            delay = max(0.0, next_run - now)
            if delay > 0:
                try:
                    self._wakeup.clear()
                    await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
                    continue
                except asyncio.TimeoutError:
                    pass

            heapq.heappop(self._queue)
            metrics.task_backlog_gauge().set(len(self._queue))
            if handle.cancelled:
                continue
            handle.in_flight = self._loop.create_task(self._execute(handle))

    async def _execute(self, handle: RealtimeTaskHandle) -> None:
        assert self._loop is not None
        config = handle.config
        scheduled_start = handle.next_run
        jitter = (self._loop.time() - scheduled_start) * 1000.0
        if jitter > config.max_jitter_ms:
            logger.debug("rt_task_jitter_exceeded", task=config.name, jitter_ms=jitter)
        deadline_missed = False
        try:
            await handle.coroutine_factory()
        except Exception as exc:  # pragma: no cover - log path
            logger.exception("rt_task_exception", task=config.name, error=str(exc))
        finally:
            handle.runs += 1
            finished = self._loop.time()
            task_latency = (finished - scheduled_start) * 1000.0
            if (finished - scheduled_start) > config.deadline_seconds:
                deadline_missed = True
                metrics.task_deadline_counter(config.name).inc()
                logger.warning("rt_task_deadline_miss", task=config.name, latency_ms=task_latency)
            metrics.task_latency_histogram(config.name).observe(task_latency)
            metrics.task_jitter_histogram(config.name).observe(max(jitter, 0.0))
            handle.last_stats = RealtimeTaskStats(jitter_ms=jitter, latency_ms=task_latency, deadline_missed=deadline_missed)
            handle.next_run = scheduled_start + config.period_seconds
            if not handle.cancelled and self._running:
                self._push(handle)
                self._wakeup.set()

    def _push(self, handle: RealtimeTaskHandle) -> None:
        heapq.heappush(
            self._queue,
            (handle.next_run, handle.config.priority, handle.ordinal, handle),
        )
        metrics.task_backlog_gauge().set(len(self._queue))

    def get_handle(self, task_name: str) -> Optional[RealtimeTaskHandle]:
        return self._handles.get(task_name)

    def task_names(self) -> list[str]:
        return list(self._handles)
