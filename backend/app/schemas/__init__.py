"""Pydantic schemas for API payloads."""

from .rooms import CreateRoomData, CreateRoomRequest, CreateRoomResponse, EndRoomResponse, LiveRoomRead
from .tokens import TokenRequest, TokenResponse

__all__ = [
    "CreateRoomData",
    "CreateRoomRequest",
    "CreateRoomResponse",
    "EndRoomResponse",
    "LiveRoomRead",
    "TokenRequest",
    "TokenResponse",
]
