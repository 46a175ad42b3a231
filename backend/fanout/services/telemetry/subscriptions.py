from __future__ import annotations

import weakref
from typing import List, Optional

import structlog

from ...core.observability import EventKind, Observability
from ...shared.schemas import DropReason, Sample
from .errors import UnknownChannel
from .models import Connection, EnqueueResult
from .registry import ChannelRegistry

logger = structlog.get_logger(__name__)


class SubscriptionManager:
    """Routes samples into per-connection queues and applies the overflow policy.

    Connections are owned by the lifecycle controller; this class only keeps
    weak references to them for routing.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        observability: Observability,
        *,
        auto_register: bool = False,
    ) -> None:
        self._registry = registry
        self._observability = observability
        self._auto_register = auto_register
        self._connections: "weakref.WeakValueDictionary[str, Connection]" = weakref.WeakValueDictionary()

    @property
    def auto_register(self) -> bool:
        return self._auto_register

    def attach(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def detach(self, connection_id: str) -> List[str]:
        """Remove every subscription of a connection; returns the channels it left."""
        removed = self.unsubscribe_all(connection_id)
        self._connections.pop(connection_id, None)
        return removed

    def connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def subscribe(self, connection_id: str, channel: str) -> bool:
        """Subscribe a connection; returns False when the pair already existed."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.accepting:
            return False
        if channel not in self._registry:
            if not self._auto_register:
                raise UnknownChannel(channel)
            self._registry.ensure(channel)
        added = self._registry.add_subscriber(channel, connection_id)
        connection.channels.add(channel)
        if added:
            self._observability.emit(EventKind.subscribed, connection=connection_id, channel=channel)
        return added

    def unsubscribe(self, connection_id: str, channel: str) -> bool:
        removed = self._registry.remove_subscriber(channel, connection_id)
        connection = self._connections.get(connection_id)
        if connection is not None and channel in connection.channels:
            connection.channels.discard(channel)
            connection.queue.purge(channel)
            removed = True
        if removed:
            self._observability.emit(EventKind.unsubscribed, connection=connection_id, channel=channel)
        return removed

    def unsubscribe_all(self, connection_id: str) -> List[str]:
        connection = self._connections.get(connection_id)
        if connection is None:
            return []
        channels = sorted(connection.channels)
        for channel in channels:
            self.unsubscribe(connection_id, channel)
        return channels

    def forget_channel(self, channel: str, subscribers: List[str]) -> None:
        """Drop a removed channel from its former subscribers' state."""
        for connection_id in subscribers:
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            connection.channels.discard(channel)
            connection.queue.purge(channel)

    def enqueue(self, connection_id: str, sample: Sample) -> EnqueueResult:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.accepting or sample.channel not in connection.channels:
            return EnqueueResult.discarded
        if sample.channel not in self._registry:
            self._observability.emit(
                EventKind.sample_dropped,
                connection=connection_id,
                channel=sample.channel,
                reason=DropReason.channel_unknown.value,
                seq=sample.seq,
            )
            return EnqueueResult.discarded
        result, dropped = connection.queue.push(sample)
        if dropped is not None:
            self._observability.emit(
                EventKind.sample_dropped,
                connection=connection_id,
                channel=dropped.channel,
                reason=DropReason.queue_full.value,
                policy=connection.queue.policy.value,
                seq=dropped.seq,
            )
        return result
