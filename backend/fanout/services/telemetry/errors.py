from __future__ import annotations


class TelemetryError(Exception):
    """Base class for fan-out core errors."""


class UnknownChannel(TelemetryError, KeyError):
    def __init__(self, channel: str) -> None:
        super().__init__(channel)
        self.channel = channel

    def __str__(self) -> str:
        return f"Unknown channel: {self.channel}"


class ChannelAlreadyRegistered(TelemetryError, ValueError):
    def __init__(self, channel: str) -> None:
        super().__init__(f"Channel {channel} already registered")
        self.channel = channel


class GeneratorFailure(TelemetryError):
    """A generator raised or produced something that is not a finite number."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"Generator for {channel} failed: {reason}")
        self.channel = channel
        self.reason = reason


class GeneratorExhausted(TelemetryError):
    """A finite generator has no more values."""


class TransportFailure(TelemetryError):
    def __init__(self, connection_id: str, reason: str) -> None:
        super().__init__(f"Transport for {connection_id} failed: {reason}")
        self.connection_id = connection_id
        self.reason = reason
