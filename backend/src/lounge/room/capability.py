"""External capabilities consumed by the room coordinator.

The coordinator never talks to a conferencing SDK or HTTP API directly. It is
handed objects implementing these protocols at construction time and reacts to
the events the transport pushes through ``add_listener``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence, Union

from .models import ParticipantMetadata, ParticipantRole, Room

logger = logging.getLogger(__name__)

BROADCAST = "*"

Targets = Union[str, Sequence[str]]


# ---------------------------------------------------------------------------
# Transport events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RoomJoined:
    room_id: str
    local_peer_id: str
    role: ParticipantRole
    metadata: ParticipantMetadata | None = None


@dataclass(frozen=True, slots=True)
class PeerJoined:
    peer_id: str
    role: ParticipantRole = ParticipantRole.LISTENER
    metadata: ParticipantMetadata | None = None


@dataclass(frozen=True, slots=True)
class PeerLeft:
    peer_id: str


@dataclass(frozen=True, slots=True)
class MetadataUpdated:
    peer_id: str
    metadata: ParticipantMetadata


@dataclass(frozen=True, slots=True)
class RoleChanged:
    peer_id: str
    role: ParticipantRole


@dataclass(frozen=True, slots=True)
class DataReceived:
    sender_id: str
    label: str
    payload: Any


@dataclass(frozen=True, slots=True)
class MuteRequested:
    """The host asked every participant to mute."""

    requested_by: str | None = None


@dataclass(frozen=True, slots=True)
class RoomLeft:
    reason: str = "left"
    details: dict[str, Any] = field(default_factory=dict)


TransportEvent = Union[
    RoomJoined,
    PeerJoined,
    PeerLeft,
    MetadataUpdated,
    RoleChanged,
    DataReceived,
    MuteRequested,
    RoomLeft,
]

TransportListener = Callable[[TransportEvent], None]


class RoomTransport(Protocol):
    """Conferencing capability: membership, metadata and data messages."""

    async def join_room(self, room_id: str, token: str) -> RoomJoined: ...

    async def leave_room(self) -> None: ...

    async def mute_everyone(self) -> None: ...

    async def update_metadata(self, metadata: ParticipantMetadata) -> None: ...

    async def send_data(self, to: Targets, payload: str, label: str) -> None: ...

    async def update_role(self, peer_id: str, role: ParticipantRole) -> None: ...

    async def kick_peer(self, peer_id: str) -> None: ...

    def add_listener(self, listener: TransportListener) -> Callable[[], None]: ...


class RoomBackend(Protocol):
    """Backend that books rooms and resolves existing ones before joining."""

    async def create_room(self, title: str) -> Room: ...

    async def get_room(self, room_id: str) -> Room: ...


class TokenProvider(Protocol):
    """Issues the join token for a room."""

    async def fetch_token(
        self, room_id: str, *, user_id: str, role: ParticipantRole, host_key: str | None = None
    ) -> str: ...


class StaticTokenProvider:
    """Placeholder that always hands out the same token.

    Kept so a room can be joined against transports that do not check tokens.
    Every use is logged as a warning because it bypasses real token issuance.
    """

    def __init__(self, token: str) -> None:
        self._token = token

    async def fetch_token(
        self, room_id: str, *, user_id: str, role: ParticipantRole, host_key: str | None = None
    ) -> str:
        logger.warning(
            "Joining room %s with a static placeholder token; wire a real token provider",
            room_id,
        )
        return self._token


__all__ = [
    "BROADCAST",
    "DataReceived",
    "MetadataUpdated",
    "MuteRequested",
    "PeerJoined",
    "PeerLeft",
    "RoleChanged",
    "RoomBackend",
    "RoomJoined",
    "RoomLeft",
    "RoomTransport",
    "StaticTokenProvider",
    "Targets",
    "TokenProvider",
    "TransportEvent",
    "TransportListener",
]
