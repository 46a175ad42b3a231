from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketState

from ...core.config import Settings
from ...core.event_bus import EventBus
from ...core.observability import EventKind, Observability
from ...core.realtime import RealTimeCoordinator
from ...shared.schemas import (
    ChannelInfo,
    ConnectionInfo,
    ErrorCode,
    ErrorMessage,
    RegisterChannelRequest,
    Sample,
    SampleMessage,
    SubscribeMessage,
    client_message_adapter,
)
from ..telemetry.connections import ConnectionLifecycleController
from ..telemetry.dispatch import DispatchLoop
from ..telemetry.errors import ChannelAlreadyRegistered, UnknownChannel
from ..telemetry.generators import build_generator
from ..telemetry.models import Connection
from ..telemetry.registry import Channel, ChannelRegistry
from ..telemetry.sources import SampleSource
from ..telemetry.subscriptions import SubscriptionManager

logger = structlog.get_logger(__name__)


class WebSocketTransport:
    """Transport binding for a Starlette/FastAPI websocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send(self, message: Dict[str, Any]) -> None:
        await self._websocket.send_json(message)

    async def close(self, code: int = 1000) -> None:
        if (
            self._websocket.application_state == WebSocketState.CONNECTED
            and self._websocket.client_state == WebSocketState.CONNECTED
        ):
            await self._websocket.close(code=code)


def _summarize(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "message"
    return f"{location}: {first.get('msg', 'invalid')}"


class TelemetryBridge:
    """Wires the fan-out core together and speaks the viewer protocol."""

    def __init__(
        self,
        settings: Settings,
        coordinator: RealTimeCoordinator,
        event_bus: Optional[EventBus] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.observability = Observability(event_bus, history=settings.observability_history)
        self.registry = ChannelRegistry(on_destroyed=self._release_source)
        self.subscriptions = SubscriptionManager(
            self.registry,
            self.observability,
            auto_register=settings.auto_register_channels,
        )
        self.connections = ConnectionLifecycleController(
            self.subscriptions,
            self.observability,
            queue_capacity=settings.queue_capacity,
            overflow_policy=settings.overflow_policy,
            drain_timeout=settings.drain_timeout_seconds,
            send_timeout=settings.send_timeout_seconds,
        )
        self.dispatcher = DispatchLoop(self.registry, self.subscriptions, self.connections, self.observability)
        self.sources = SampleSource(coordinator, self.dispatcher.dispatch, self.observability, clock=clock)

    # --- administrative surface ---------------------------------------------

    async def register_channel(self, request: RegisterChannelRequest) -> Channel:
        existing = self.registry.get(request.name)
        if existing is not None and existing.retained:
            raise ChannelAlreadyRegistered(request.name)
        generator = build_generator(request.generator)
        cadence_ms = request.cadence_ms if generator is not None else None
        # an auto-registered channel may already have an external feed attached
        await self.sources.stop(request.name)
        channel = self.registry.ensure(
            request.name,
            cadence_ms=cadence_ms,
            generator=request.generator.kind,
            retained=True,
        )
        self.sources.start(request.name, cadence_ms, generator)
        self.observability.emit(
            EventKind.channel_registered,
            channel=request.name,
            cadence_ms=cadence_ms,
            generator=request.generator.kind,
        )
        return channel

    async def register_channels(self, requests: Iterable[RegisterChannelRequest]) -> List[Channel]:
        return [await self.register_channel(request) for request in requests]

    async def unregister_channel(self, name: str) -> bool:
        stopped = await self.sources.stop(name)
        channel = self.registry.remove(name)
        if channel is None:
            return stopped
        subscribers = list(channel.subscribers)
        self.subscriptions.forget_channel(name, subscribers)
        for connection_id in subscribers:
            self._send_error(connection_id, ErrorCode.channel_unregistered, f"Channel {name} was unregistered")
        self.observability.emit(EventKind.channel_unregistered, channel=name, subscribers=len(subscribers))
        return True

    def publish(self, name: str, value: float) -> Sample:
        """Push an externally produced value onto a channel."""
        if name not in self.registry:
            raise UnknownChannel(name)
        if name not in self.sources:
            self.sources.start(name, None, None)
        return self.sources.push(name, value)

    def _release_source(self, name: str) -> None:
        self.sources.discard(name)

    async def shutdown(self) -> None:
        await self.sources.stop_all()
        await self.connections.close_all()

    # --- viewer protocol ----------------------------------------------------

    def handle_message(self, connection_id: str, raw: Union[str, bytes, Dict[str, Any]]) -> None:
        try:
            if isinstance(raw, (str, bytes)):
                message = client_message_adapter.validate_json(raw)
            else:
                message = client_message_adapter.validate_python(raw)
        except ValidationError as exc:
            logger.debug("bad_client_message", connection=connection_id, error=str(exc))
            self._send_error(connection_id, ErrorCode.bad_message, _summarize(exc))
            return

        if isinstance(message, SubscribeMessage):
            try:
                self.subscriptions.subscribe(connection_id, message.channel)
            except UnknownChannel as exc:
                self._send_error(connection_id, ErrorCode.unknown_channel, str(exc))
        else:
            self.subscriptions.unsubscribe(connection_id, message.channel)

    def _send_error(self, connection_id: str, code: ErrorCode, message: str) -> None:
        payload = ErrorMessage(code=code, message=message).model_dump(mode="json")
        self.connections.send_control(connection_id, payload)

    # --- views --------------------------------------------------------------

    def channel_info(self, name: str) -> ChannelInfo:
        channel = self.registry.require(name)
        return ChannelInfo(
            name=channel.name,
            cadence_ms=channel.cadence_ms,
            generator=channel.generator,
            retained=channel.retained,
            running=self.sources.is_running(channel.name),
            subscribers=len(channel.subscribers),
            sample_count=channel.sample_count,
            latest=SampleMessage.from_sample(channel.latest) if channel.latest is not None else None,
        )

    def channel_infos(self) -> List[ChannelInfo]:
        return [self.channel_info(name) for name in self.registry.names()]

    @staticmethod
    def connection_info(connection: Connection) -> ConnectionInfo:
        return ConnectionInfo(
            id=connection.id,
            state=connection.state,
            channels=sorted(connection.channels),
            queued=len(connection.queue),
            dropped=connection.dropped,
            delivered=connection.delivered,
        )

    def connection_infos(self) -> List[ConnectionInfo]:
        return [self.connection_info(connection) for connection in self.connections.connections()]
