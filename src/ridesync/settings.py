from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TransportSettings(BaseSettings):
    url: str = "ws://localhost:4000/ws"
    reconnect_attempts: int = Field(default=5, ge=0, le=50)
    reconnect_base_delay: float = Field(default=1.0, gt=0.0, le=60.0)
    reconnect_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    reconnect_max_delay: float = Field(default=5.0, gt=0.0, le=300.0)
    connect_timeout: float = Field(default=20.0, gt=0.0)
    ping_interval: float | None = Field(default=20.0, description="None disables keepalive pings")

    model_config = SettingsConfigDict(env_prefix="RIDESYNC_TRANSPORT_")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("Transport URL must start with ws:// or wss://")
        return v

    @model_validator(mode="after")
    def validate_delays(self) -> "TransportSettings":
        if self.reconnect_base_delay > self.reconnect_max_delay:
            raise ValueError(
                f"reconnect_base_delay ({self.reconnect_base_delay}) exceeds "
                f"reconnect_max_delay ({self.reconnect_max_delay})"
            )
        return self


class APISettings(BaseSettings):
    base_url: str = "http://localhost:4000/api"
    timeout: float = Field(default=10.0, gt=0.0)
    fetch_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a snapshot fetch that fails with a transport error",
    )
    fetch_retry_base_delay: float = Field(default=0.5, gt=0.0, le=10.0)

    model_config = SettingsConfigDict(env_prefix="RIDESYNC_API_")

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("API base URL must start with http:// or https://")
        return v.rstrip("/")


class PublisherSettings(BaseSettings):
    """Driver location publishing thresholds."""

    interval_seconds: float = Field(
        default=5.0,
        gt=0.0,
        le=300.0,
        description="Seconds after which a new fix is sent even without movement",
    )
    min_distance_m: float = Field(
        default=10.0,
        ge=0.0,
        le=1000.0,
        description="Displacement in meters that triggers a send before the interval elapses",
    )

    model_config = SettingsConfigDict(env_prefix="RIDESYNC_PUBLISHER_")


class DispatchSettings(BaseSettings):
    """Client-side matching timeouts. Disabled unless configured."""

    search_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Seconds a ride search may stay unmatched before the client gives up",
    )
    offer_timeout_seconds: float | None = Field(
        default=None,
        gt=0.0,
        description="Seconds a driver offer stays on screen without a response",
    )
    emit_reject_event: bool = Field(
        default=False,
        description="Publish driver_rejects_ride when the driver declines an offer",
    )

    model_config = SettingsConfigDict(env_prefix="RIDESYNC_DISPATCH_")


class ChatSettings(BaseSettings):
    typing_indicator_seconds: float = Field(
        default=2.0,
        gt=0.0,
        le=30.0,
        description="Seconds the other participant is shown as typing after their last keystroke",
    )

    model_config = SettingsConfigDict(env_prefix="RIDESYNC_CHAT_")


class LoggingSettings(BaseSettings):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["text", "json"] = "text"
    environment: str = "development"

    model_config = SettingsConfigDict(env_prefix="RIDESYNC_LOG_")


class Settings(BaseSettings):
    transport: TransportSettings = Field(default_factory=TransportSettings)
    api: APISettings = Field(default_factory=APISettings)
    publisher: PublisherSettings = Field(default_factory=PublisherSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = SettingsConfigDict(
        env_prefix="RIDESYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    return Settings()
