from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, Optional, Protocol, Set, Tuple

from ...shared.schemas import ConnectionState, OverflowPolicy, Sample, SampleMessage


class Transport(Protocol):
    """Ordered, reliable delivery to one remote viewer."""

    async def send(self, message: Dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class EnqueueResult(str, Enum):
    delivered = "delivered"
    evicted_oldest = "evicted_oldest"  # accepted after dropping the queue head
    rejected = "rejected"  # dropped by drop-new
    discarded = "discarded"  # connection not accepting samples

    @property
    def accepted(self) -> bool:
        return self in (EnqueueResult.delivered, EnqueueResult.evicted_oldest)


class OutboundQueue:
    """Bounded FIFO of samples waiting to be written to one connection."""

    def __init__(self, capacity: int, policy: OverflowPolicy = OverflowPolicy.drop_oldest) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.policy = policy
        self.dropped = 0
        self._items: Deque[Sample] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(tuple(self._items))

    @property
    def full(self) -> bool:
        return len(self._items) >= self.capacity

    def push(self, sample: Sample) -> Tuple[EnqueueResult, Optional[Sample]]:
        """Append ``sample``; returns the result and the sample that was dropped, if any."""
        if not self.full:
            self._items.append(sample)
            return EnqueueResult.delivered, None
        self.dropped += 1
        if self.policy is OverflowPolicy.drop_new:
            return EnqueueResult.rejected, sample
        evicted = self._items.popleft()
        self._items.append(sample)
        return EnqueueResult.evicted_oldest, evicted

    def pop(self) -> Optional[Sample]:
        return self._items.popleft() if self._items else None

    def purge(self, channel: str) -> int:
        kept = [sample for sample in self._items if sample.channel != channel]
        removed = len(self._items) - len(kept)
        self._items = deque(kept)
        return removed

    def clear(self) -> int:
        removed = len(self._items)
        self._items.clear()
        return removed


@dataclass(eq=False)
class Connection:
    """One live viewer session."""

    id: str
    transport: Transport
    queue: OutboundQueue
    state: ConnectionState = ConnectionState.connecting
    channels: Set[str] = field(default_factory=set)
    delivered: int = 0
    opened_at: float = field(default_factory=time.time)
    control: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=32))
    wakeup: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    writer: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    # sample handed to the transport but not yet confirmed
    in_flight: Optional[Sample] = field(default=None, repr=False)

    @property
    def accepting(self) -> bool:
        return self.state is ConnectionState.active

    @property
    def dropped(self) -> int:
        return self.queue.dropped

    def has_pending(self) -> bool:
        return bool(self.control) or len(self.queue) > 0

    def next_outbound(self) -> Optional[Tuple[Dict[str, Any], Optional[Sample]]]:
        """Protocol messages go out before queued samples."""
        if self.control:
            return self.control.popleft(), None
        sample = self.queue.pop()
        if sample is None:
            return None
        return SampleMessage.from_sample(sample).model_dump(mode="json"), sample
