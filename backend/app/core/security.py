"""Signing and validation of room join tokens."""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt
from fastapi import HTTPException, status

from app.config import get_settings
from lounge.room.models import ParticipantRole

settings = get_settings()


class RoomTokenError(Exception):
    """Raised when a room token cannot be validated."""


@dataclass(slots=True)
class RoomTokenClaims:
    user_id: str
    role: ParticipantRole
    room_id: str
    expires_at: datetime


def create_room_token(
    *,
    user_id: str,
    role: ParticipantRole,
    room_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed token granting *user_id* access to *room_id* as *role*."""

    issued_at = datetime.now(timezone.utc)
    expire = issued_at + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.room_token_expire_minutes)
    )
    payload: Dict[str, Any] = {
        "userId": user_id,
        "role": role.value,
        "roomId": room_id,
        "iat": int(issued_at.timestamp()),
        "exp": expire,
    }
    return jwt.encode(payload, settings.room_token_secret, algorithm=settings.room_token_algorithm)


def decode_room_token(token: str, *, room_id: str | None = None) -> RoomTokenClaims:
    """Decode *token*; when *room_id* is given the token must be bound to it."""

    try:
        payload = jwt.decode(token, settings.room_token_secret, algorithms=[settings.room_token_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise RoomTokenError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise RoomTokenError("Could not validate room token") from exc

    user_id = payload.get("userId")
    token_room = payload.get("roomId")
    if not isinstance(user_id, str) or not user_id:
        raise RoomTokenError("Room token is missing the user id")
    if not isinstance(token_room, str) or not token_room:
        raise RoomTokenError("Room token is not bound to a room")
    if room_id is not None and token_room != room_id:
        raise RoomTokenError("Room token was issued for another room")

    return RoomTokenClaims(
        user_id=user_id,
        role=ParticipantRole.parse(payload.get("role")),
        room_id=token_room,
        expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
    )


def generate_host_key() -> str:
    """Return a fresh secret proving ownership of a room."""

    return secrets.token_urlsafe(32)


def hash_host_key(host_key: str) -> str:
    return hashlib.sha256(host_key.encode("utf-8")).hexdigest()


def verify_host_key(host_key: str | None, hashed: str | None) -> bool:
    if not host_key or not hashed:
        return False
    return secrets.compare_digest(hash_host_key(host_key), hashed)


def require_room_token(token: str, *, room_id: str | None = None) -> RoomTokenClaims:
    """HTTP flavour of :func:`decode_room_token` raising 401 on failure."""

    try:
        return decode_room_token(token, room_id=room_id)
    except RoomTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
