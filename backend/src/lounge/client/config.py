from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Settings for a room client, read from ``LOUNGE_*`` environment variables."""

    backend_url: str = Field(default="http://localhost:8000", description="Base URL of the lounge API")
    websocket_url: str | None = Field(
        default=None,
        description="Base URL for room sockets; derived from backend_url when unset",
    )
    user_id: str = Field(default="guest-user", description="Identity sent when requesting tokens")
    display_name: str = Field(default="", description="Name broadcast in participant metadata")
    avatar_url: str = Field(default="", description="Avatar broadcast in participant metadata")
    default_room_title: str = Field(default="Queen's Lounge")

    http_timeout_seconds: float = Field(default=10.0, ge=0.1)
    join_timeout_seconds: float = Field(default=10.0, ge=0.1)

    remote_reaction_window_seconds: float = Field(default=3.0, gt=0)
    local_reaction_window_seconds: float = Field(default=2.0, gt=0)
    speaking_tick_seconds: float = Field(default=0.3, gt=0)

    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(default=0.5, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="LOUNGE_", extra="ignore")

    @property
    def resolved_websocket_url(self) -> str:
        if self.websocket_url:
            return self.websocket_url.rstrip("/")
        base = self.backend_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://") :]
        if base.startswith("http://"):
            return "ws://" + base[len("http://") :]
        return base


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()
