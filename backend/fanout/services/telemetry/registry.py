from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import structlog

from ...shared.schemas import Sample
from .errors import UnknownChannel

logger = structlog.get_logger(__name__)


@dataclass
class Channel:
    name: str
    cadence_ms: Optional[float] = None
    generator: Optional[str] = None
    retained: bool = False
    latest: Optional[Sample] = None
    sample_count: int = 0
    # insertion-ordered set of connection ids
    subscribers: Dict[str, None] = field(default_factory=dict)


class SubscriberSnapshot:
    """Point-in-time copy of a channel's subscribers.

    Iterating it never observes later registry mutations and it can be
    iterated more than once.
    """

    __slots__ = ("channel", "_ids")

    def __init__(self, channel: str, ids: Tuple[str, ...]) -> None:
        self.channel = channel
        self._ids = ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._ids


class ChannelRegistry:
    """Maps channel names to their subscriber sets and most recent sample.

    Mutations are synchronous and only ever run on the event loop thread, so
    a dispatch snapshot never sees a half-applied change.
    """

    def __init__(self, *, on_destroyed: Optional[Callable[[str], None]] = None) -> None:
        self._channels: Dict[str, Channel] = {}
        self._on_destroyed = on_destroyed

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def ensure(
        self,
        name: str,
        *,
        cadence_ms: Optional[float] = None,
        generator: Optional[str] = None,
        retained: bool = False,
    ) -> Channel:
        channel = self._channels.get(name)
        if channel is None:
            channel = Channel(name=name, cadence_ms=cadence_ms, generator=generator, retained=retained)
            self._channels[name] = channel
            logger.debug("channel_created", channel=name, retained=retained)
        elif retained and not channel.retained:
            channel.retained = True
            channel.cadence_ms = cadence_ms
            channel.generator = generator
        return channel

    def get(self, name: str) -> Optional[Channel]:
        return self._channels.get(name)

    def require(self, name: str) -> Channel:
        channel = self._channels.get(name)
        if channel is None:
            raise UnknownChannel(name)
        return channel

    def names(self) -> List[str]:
        return list(self._channels)

    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def remove(self, name: str) -> Optional[Channel]:
        channel = self._channels.pop(name, None)
        if channel is not None:
            logger.debug("channel_removed", channel=name, subscribers=len(channel.subscribers))
        return channel

    def latest(self, name: str) -> Optional[Sample]:
        return self.require(name).latest

    def record(self, sample: Sample) -> bool:
        channel = self._channels.get(sample.channel)
        if channel is None:
            return False
        channel.latest = sample
        channel.sample_count += 1
        return True

    def add_subscriber(self, name: str, connection_id: str) -> bool:
        channel = self.require(name)
        if connection_id in channel.subscribers:
            return False
        channel.subscribers[connection_id] = None
        return True

    def remove_subscriber(self, name: str, connection_id: str) -> bool:
        """Remove a subscriber; an ephemeral channel left empty is destroyed."""
        channel = self._channels.get(name)
        if channel is None or connection_id not in channel.subscribers:
            return False
        del channel.subscribers[connection_id]
        if not channel.subscribers and not channel.retained:
            self.remove(name)
            if self._on_destroyed is not None:
                self._on_destroyed(name)
        return True

    def subscribers_of(self, name: str) -> SubscriberSnapshot:
        channel = self._channels.get(name)
        ids: Tuple[str, ...] = tuple(channel.subscribers) if channel is not None else ()
        return SubscriberSnapshot(name, ids)
