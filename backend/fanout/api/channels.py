from __future__ import annotations

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from ..core.observability import EventKind
from ..deps import get_telemetry_bridge
from ..services.bridges.telemetry_bridge import TelemetryBridge
from ..services.telemetry.errors import ChannelAlreadyRegistered, UnknownChannel
from ..shared.schemas import (
    ChannelInfo,
    ConnectionInfo,
    ObservabilityRecord,
    PublishSampleRequest,
    RegisterChannelRequest,
    SampleMessage,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api", tags=["channels"])


@router.get("/channels", response_model=List[ChannelInfo])
async def list_channels(bridge: TelemetryBridge = Depends(get_telemetry_bridge)):
    return bridge.channel_infos()


@router.post("/channels", response_model=ChannelInfo, status_code=status.HTTP_201_CREATED)
async def register_channel(request: RegisterChannelRequest, bridge: TelemetryBridge = Depends(get_telemetry_bridge)):
    """Register a channel and start its sample source."""
    try:
        await bridge.register_channel(request)
    except ChannelAlreadyRegistered as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return bridge.channel_info(request.name)


@router.get("/channels/{name}", response_model=ChannelInfo)
async def get_channel(name: str, bridge: TelemetryBridge = Depends(get_telemetry_bridge)):
    try:
        return bridge.channel_info(name)
    except UnknownChannel as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.delete("/channels/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_channel(name: str, bridge: TelemetryBridge = Depends(get_telemetry_bridge)) -> Response:
    """Stop the channel's source and drop all of its subscriptions."""
    if not await bridge.unregister_channel(name):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown channel: {name}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/channels/{name}/latest", response_model=Optional[SampleMessage])
async def latest_sample(name: str, bridge: TelemetryBridge = Depends(get_telemetry_bridge)):
    try:
        sample = bridge.registry.latest(name)
    except UnknownChannel as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SampleMessage.from_sample(sample) if sample is not None else None


@router.post("/channels/{name}/samples", response_model=SampleMessage, status_code=status.HTTP_202_ACCEPTED)
async def publish_sample(
    name: str,
    request: PublishSampleRequest,
    bridge: TelemetryBridge = Depends(get_telemetry_bridge),
):
    """Push one externally produced value onto a channel."""
    try:
        sample = bridge.publish(name, request.value)
    except UnknownChannel as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return SampleMessage.from_sample(sample)


@router.get("/connections", response_model=List[ConnectionInfo])
async def list_connections(bridge: TelemetryBridge = Depends(get_telemetry_bridge)):
    return bridge.connection_infos()


@router.delete("/connections/{connection_id}", status_code=status.HTTP_202_ACCEPTED)
async def close_connection(connection_id: str, bridge: TelemetryBridge = Depends(get_telemetry_bridge)) -> Dict[str, Any]:
    """Drain and close a viewer connection."""
    if bridge.connections.get(connection_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown connection: {connection_id}")
    await bridge.connections.close(connection_id, reason="admin_close")
    logger.info("connection_closed_by_admin", connection=connection_id)
    return {"connection": connection_id, "closed": True}


@router.get("/events/recent", response_model=List[ObservabilityRecord])
async def recent_events(
    kind: Optional[EventKind] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    bridge: TelemetryBridge = Depends(get_telemetry_bridge),
):
    return [ObservabilityRecord(**event.to_dict()) for event in bridge.observability.recent(kind, limit=limit)]
