"""Schemas for live room creation and listing."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr


class CreateRoomRequest(BaseModel):
    """Payload accepted by ``POST /create-room``."""

    model_config = ConfigDict(populate_by_name=True)

    title: constr(strip_whitespace=True, max_length=128) | None = Field(
        default=None, description="Human readable room title"
    )
    host_id: constr(strip_whitespace=True, min_length=1, max_length=128) | None = Field(
        default=None, alias="hostId", description="Identity of the user creating the room"
    )


class CreateRoomData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    host_key: str | None = Field(
        default=None,
        alias="hostKey",
        description="Secret required to request host tokens; only returned at creation",
    )


class CreateRoomResponse(BaseModel):
    """Mirrors the provider's ``{"data": {"roomId": ...}}`` envelope."""

    data: CreateRoomData


class LiveRoomRead(BaseModel):
    """Room record returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    room_id: str
    title: str
    is_live: bool
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    ended_at: datetime | None = None
    participants: int = Field(default=0, description="Participants connected to this node")


class EndRoomResponse(BaseModel):
    room: LiveRoomRead
    disconnected: int = Field(description="Connections closed on this node")
