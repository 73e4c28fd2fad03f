"""Schemas for room join token issuance."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, constr

from lounge.room.models import ParticipantRole


class TokenRequest(BaseModel):
    """Payload accepted by ``POST /generateHuddleToken``."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: constr(strip_whitespace=True, min_length=1, max_length=128) = Field(
        default="guest-user", alias="userId"
    )
    role: str = Field(default=ParticipantRole.LISTENER.value, description="host, speaker, listener or guest")
    room_id: constr(strip_whitespace=True, min_length=1, max_length=64) = Field(alias="roomId")
    host_key: str | None = Field(default=None, alias="hostKey", description="Required for host tokens")


class TokenResponse(BaseModel):
    token: str
    role: str
    expires_in: int = Field(serialization_alias="expiresIn", description="Token lifetime in seconds")
