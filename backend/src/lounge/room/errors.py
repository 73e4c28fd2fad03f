"""Exceptions raised by the room coordination layer."""

from __future__ import annotations


class RoomError(Exception):
    """Base class for live room failures."""


class TransportError(RoomError):
    """Raised when the room transport rejects or cannot deliver a request."""


class RoomCreationError(RoomError):
    """Raised when the backend fails to create a room."""


class TokenError(RoomError):
    """Raised when a room token cannot be acquired."""


class JoinError(RoomError):
    """Raised when the transport refuses to join a room."""


class HostOnlyActionError(RoomError):
    """Raised when a non-host invokes a host-only action."""

    def __init__(self, action: str) -> None:
        super().__init__(f"Only the host may {action}")
        self.action = action


__all__ = [
    "HostOnlyActionError",
    "JoinError",
    "RoomCreationError",
    "RoomError",
    "TokenError",
    "TransportError",
]
