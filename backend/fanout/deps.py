from __future__ import annotations

from .services.bridges.telemetry_bridge import TelemetryBridge


def get_telemetry_bridge() -> TelemetryBridge:
    # FastAPI injects this via app.state; placeholder for wiring inside routers
    raise NotImplementedError("Dependency override must supply TelemetryBridge instance")
