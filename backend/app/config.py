from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="She Means Business Lounge", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=True, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
            "http://127.0.0.1:5173",
        ],
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite:///./lounge.db",
        description="SQLAlchemy URL of the room record database",
    )

    room_token_secret: str = Field(default="changeme", description="HMAC secret for room join tokens")
    room_token_algorithm: str = Field(default="HS256")
    room_token_expire_minutes: int = Field(default=60, ge=1)

    conferencing_api_url: AnyHttpUrl | None = Field(
        default=None,
        description="Create-room endpoint of the external conferencing provider; rooms get local ids when unset",
    )
    conferencing_api_key: str | None = Field(default=None, description="API key sent as x-api-key")
    conferencing_room_type: str = Field(default="audio")
    conferencing_timeout_seconds: float = Field(default=10.0, gt=0)
    default_room_title: str = Field(default="Queen's Lounge")

    realtime_redis_url: str | None = Field(
        default=None,
        description="Redis URL used for cross-node room fan-out; local-only when unset",
    )
    realtime_namespace: str = Field(default="lounge.realtime")
    realtime_node_id: str | None = Field(default=None, description="Stable node id; random when unset")

    websocket_keepalive_timeout_seconds: float = Field(
        default=20.0, ge=0, description="Idle receive timeout after which the server checks for a keepalive ping"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=20.0, ge=0, description="Minimum delay between keepalive pings on an idle socket"
    )
    room_max_speakers: int = Field(default=16, ge=1, description="Maximum number of simultaneous speakers")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @property
    def uses_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    return Settings()
