"""Structured events emitted by the fan-out core.

Every event is logged, counted, kept in a bounded history and republished on
the ``EventBus`` so operators can watch it live over ``/ws/events``.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

from . import metrics
from .event_bus import EventBus

logger = structlog.get_logger(__name__)

OBSERVABILITY_TOPIC = "observability"


class EventKind(str, Enum):
    connection_opened = "connection_opened"
    connection_closed = "connection_closed"
    subscribed = "subscribed"
    unsubscribed = "unsubscribed"
    sample_dropped = "sample_dropped"
    generator_error = "generator_error"
    channel_registered = "channel_registered"
    channel_unregistered = "channel_unregistered"


_LOG_LEVELS: Dict[EventKind, int] = {
    EventKind.sample_dropped: logging.DEBUG,
    EventKind.generator_error: logging.WARNING,
}


@dataclass(frozen=True)
class ObservabilityEvent:
    kind: EventKind
    timestamp: float
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "timestamp": self.timestamp, "fields": dict(self.fields)}


class Observability:
    def __init__(self, event_bus: Optional[EventBus] = None, *, history: int = 256) -> None:
        self._event_bus = event_bus
        self._recent: Deque[ObservabilityEvent] = deque(maxlen=history)

    def emit(self, kind: EventKind, **fields: Any) -> ObservabilityEvent:
        event = ObservabilityEvent(kind=kind, timestamp=time.time(), fields=fields)
        self._recent.append(event)
        logger.log(_LOG_LEVELS.get(kind, logging.INFO), kind.value, **fields)
        metrics.observability_events_counter(kind.value).inc()
        if kind is EventKind.sample_dropped:
            metrics.samples_dropped_counter(fields.get("channel", ""), str(fields.get("reason", ""))).inc(
                fields.get("count", 1)
            )
        elif kind is EventKind.generator_error:
            metrics.generator_errors_counter(fields.get("channel", "")).inc()
        if self._event_bus is not None:
            self._event_bus.publish(OBSERVABILITY_TOPIC, event.to_dict())
        return event

    def recent(self, kind: Optional[EventKind] = None, limit: Optional[int] = None) -> List[ObservabilityEvent]:
        events = [event for event in self._recent if kind is None or event.kind is kind]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events
