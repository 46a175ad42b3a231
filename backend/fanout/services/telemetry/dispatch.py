from __future__ import annotations

import structlog

from ...core.observability import EventKind, Observability
from ...shared.schemas import DropReason, Sample
from .connections import ConnectionLifecycleController
from .registry import ChannelRegistry
from .subscriptions import SubscriptionManager

logger = structlog.get_logger(__name__)


class DispatchLoop:
    """Fans every new sample out to the channel's current subscribers.

    Runs synchronously inside the tick that produced the sample: the
    subscriber snapshot, the enqueues and the flush requests all happen
    without yielding, so a subscription made after the sample was emitted
    never receives it.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        subscriptions: SubscriptionManager,
        connections: ConnectionLifecycleController,
        observability: Observability,
    ) -> None:
        self._registry = registry
        self._subscriptions = subscriptions
        self._connections = connections
        self._observability = observability

    def dispatch(self, sample: Sample) -> int:
        """Route ``sample``; returns the number of connections that accepted it."""
        if not self._registry.record(sample):
            self._observability.emit(
                EventKind.sample_dropped,
                channel=sample.channel,
                reason=DropReason.channel_unknown.value,
                seq=sample.seq,
            )
            return 0
        accepted = 0
        for connection_id in self._registry.subscribers_of(sample.channel):
            result = self._subscriptions.enqueue(connection_id, sample)
            if result.accepted:
                accepted += 1
                self._connections.request_flush(connection_id)
        logger.debug("sample_dispatched", channel=sample.channel, seq=sample.seq, accepted=accepted)
        return accepted
