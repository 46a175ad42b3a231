from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class OverflowPolicy(str, Enum):
    drop_oldest = "drop-oldest"
    drop_new = "drop-new"


class ConnectionState(str, Enum):
    connecting = "connecting"
    active = "active"
    draining = "draining"
    closed = "closed"


class DropReason(str, Enum):
    queue_full = "queue-full"
    channel_unknown = "channel-unknown"
    generator_error = "generator-error"
    drain_timeout = "drain-timeout"


class ErrorCode(str, Enum):
    unknown_channel = "unknown_channel"
    bad_message = "bad_message"
    channel_unregistered = "channel_unregistered"


@dataclass(frozen=True)
class Sample:
    """One immutable data point on a channel."""

    channel: str
    timestamp: float
    value: float
    seq: int = 0


# --- client -> server -------------------------------------------------------


class SubscribeMessage(BaseModel):
    type: Literal["subscribe"] = "subscribe"
    channel: str = Field(min_length=1, max_length=128)


class UnsubscribeMessage(BaseModel):
    type: Literal["unsubscribe"] = "unsubscribe"
    channel: str = Field(min_length=1, max_length=128)


ClientMessage = Annotated[Union[SubscribeMessage, UnsubscribeMessage], Field(discriminator="type")]
client_message_adapter: TypeAdapter[Any] = TypeAdapter(ClientMessage)


# --- server -> client -------------------------------------------------------


class SampleMessage(BaseModel):
    type: Literal["sample"] = "sample"
    channel: str
    timestamp: float = Field(description="Wall-clock seconds since the epoch")
    value: float

    @classmethod
    def from_sample(cls, sample: Sample) -> "SampleMessage":
        return cls(channel=sample.channel, timestamp=sample.timestamp, value=sample.value)


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    code: ErrorCode
    message: str


# --- generators -------------------------------------------------------------


class RandomGeneratorConfig(BaseModel):
    kind: Literal["random"] = "random"
    low: float = 0.0
    high: float = 100.0
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "RandomGeneratorConfig":
        if self.high < self.low:
            raise ValueError("high must be greater than or equal to low")
        return self


class SineGeneratorConfig(BaseModel):
    kind: Literal["sine"] = "sine"
    amplitude: float = 1.0
    period_s: float = Field(default=10.0, gt=0)
    offset: float = 0.0


class ReplayGeneratorConfig(BaseModel):
    kind: Literal["replay"] = "replay"
    values: List[float] = Field(min_length=1)
    loop: bool = True


class ExternalGeneratorConfig(BaseModel):
    """Values are pushed through the admin API instead of generated on a timer."""

    kind: Literal["external"] = "external"


GeneratorConfig = Annotated[
    Union[RandomGeneratorConfig, SineGeneratorConfig, ReplayGeneratorConfig, ExternalGeneratorConfig],
    Field(discriminator="kind"),
]


# --- admin surface ----------------------------------------------------------


class RegisterChannelRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    cadence_ms: float = Field(default=1000.0, gt=0)
    generator: GeneratorConfig = Field(default_factory=RandomGeneratorConfig)


class PublishSampleRequest(BaseModel):
    value: float


class ChannelInfo(BaseModel):
    name: str
    cadence_ms: Optional[float] = None
    generator: Optional[str] = None
    retained: bool
    running: bool
    subscribers: int
    sample_count: int
    latest: Optional[SampleMessage] = None


class ConnectionInfo(BaseModel):
    id: str
    state: ConnectionState
    channels: List[str] = Field(default_factory=list)
    queued: int
    dropped: int
    delivered: int


class ObservabilityRecord(BaseModel):
    kind: str
    timestamp: float
    fields: Dict[str, Any] = Field(default_factory=dict)
