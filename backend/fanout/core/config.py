from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..shared.schemas import OverflowPolicy, RandomGeneratorConfig, RegisterChannelRequest


def _default_channels() -> List[RegisterChannelRequest]:
    return [RegisterChannelRequest(name="random", cadence_ms=1000.0, generator=RandomGeneratorConfig())]


class Settings(BaseSettings):
    """Application configuration loaded from environment variables or .env files."""

    model_config = SettingsConfigDict(env_prefix="FANOUT_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = Field(default="TelemetryFanout")
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Render logs as JSON lines instead of console output")
    prometheus_enabled: bool = Field(default=True)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    queue_capacity: int = Field(default=64, ge=1, description="Outbound queue bound per connection")
    overflow_policy: OverflowPolicy = Field(default=OverflowPolicy.drop_oldest)
    drain_timeout_ms: int = Field(default=2000, ge=0)
    send_timeout_ms: int = Field(default=5000, gt=0, description="A slower send counts as a transport failure")
    auto_register_channels: bool = Field(default=False)
    observability_history: int = Field(default=256, ge=0)
    default_channels: List[RegisterChannelRequest] = Field(default_factory=_default_channels)

    @property
    def drain_timeout_seconds(self) -> float:
        return self.drain_timeout_ms / 1000.0

    @property
    def send_timeout_seconds(self) -> float:
        return self.send_timeout_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    return Settings()
