from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import FastAPI, Response, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .api import channels
from .core.config import Settings, get_settings
from .core.event_bus import EventBus
from .core.logging_utils import configure_logging
from .core.observability import OBSERVABILITY_TOPIC
from .core.realtime import RealTimeCoordinator
from .deps import get_telemetry_bridge
from .services.bridges.telemetry_bridge import TelemetryBridge, WebSocketTransport
from .services.telemetry.errors import TransportFailure
from .shared.schemas import ConnectionState

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        event_bus = EventBus()
        coordinator = RealTimeCoordinator()
        await coordinator.start()
        bridge = TelemetryBridge(settings, coordinator, event_bus)
        await bridge.register_channels(settings.default_channels)
        app.state.event_bus = event_bus
        app.state.coordinator = coordinator
        app.state.bridge = bridge
        logger.info("fanout_started", app=settings.app_name, channels=bridge.registry.names())
        try:
            yield
        finally:
            await bridge.shutdown()
            await coordinator.stop()
            logger.info("fanout_stopped", app=settings.app_name)

    application = FastAPI(title="Telemetry Fan-out Service", lifespan=lifespan)
    application.state.settings = settings

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _provide_bridge() -> TelemetryBridge:
        return application.state.bridge

    application.dependency_overrides[get_telemetry_bridge] = _provide_bridge

    application.include_router(channels.router)

    @application.get("/health")
    async def health() -> Dict[str, Any]:
        coordinator: RealTimeCoordinator = application.state.coordinator
        bridge: TelemetryBridge = application.state.bridge
        ticks: Dict[str, Any] = {}
        for name in coordinator.task_names():
            handle = coordinator.get_handle(name)
            stats = handle.last_stats if handle else None
            ticks[name] = {
                "last_latency_ms": stats.latency_ms if stats else None,
                "deadline_missed": stats.deadline_missed if stats else None,
            }
        return {
            "status": "ok" if coordinator.running else "degraded",
            "channels": len(bridge.registry),
            "connections": len(bridge.connections),
            "coordinator": ticks,
        }

    if settings.prometheus_enabled:

        @application.get("/metrics")
        async def prometheus_metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @application.websocket("/ws")
    async def websocket_viewer(websocket: WebSocket) -> None:
        bridge: TelemetryBridge = application.state.bridge
        try:
            connection = await bridge.connections.open(WebSocketTransport(websocket), handshake=websocket.accept)
        except TransportFailure:
            return
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                bridge.handle_message(connection.id, raw)
        except WebSocketDisconnect:
            await bridge.connections.close(connection.id, reason="client_disconnect")
        except Exception as exc:
            if connection.state is ConnectionState.closed:
                return  # closed from the server side
            logger.warning("ws_viewer_error", connection=connection.id, error=str(exc))
            await bridge.connections.abort(connection.id, reason="transport_failure")

    @application.websocket("/ws/events")
    async def websocket_events(websocket: WebSocket) -> None:
        await websocket.accept()
        event_bus: EventBus = application.state.event_bus
        try:
            async for payload in event_bus.subscribe(OBSERVABILITY_TOPIC):
                try:
                    await websocket.send_json(payload)
                except Exception:
                    break  # Client disconnected, exit gracefully
        except Exception as exc:
            logger.error("ws_events_error", error=str(exc))
        finally:
            try:
                await websocket.close()
            except Exception:
                pass  # Already closed

    return application


app = create_app()
