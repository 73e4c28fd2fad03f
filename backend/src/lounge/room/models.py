"""Value objects shared by the room coordination components."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

PLACEHOLDER_AVATAR_URL = "https://api.dicebear.com/6.x/adventurer/svg?seed={seed}"
SHORT_LABEL_LENGTH = 6
MAX_SPEAKING_LEVEL = 3


class ParticipantRole(str, Enum):
    """Authorization tier assigned to a participant when joining."""

    HOST = "host"
    SPEAKER = "speaker"
    LISTENER = "listener"

    @classmethod
    def parse(cls, value: Any) -> "ParticipantRole":
        """Return the role for *value*, treating ``guest`` as a listener."""

        if isinstance(value, ParticipantRole):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "guest":
                return cls.LISTENER
            for member in cls:
                if member.value == lowered:
                    return member
        return cls.LISTENER

    @property
    def is_speaking_role(self) -> bool:
        return self in (ParticipantRole.HOST, ParticipantRole.SPEAKER)


@dataclass(frozen=True, slots=True)
class ParticipantMetadata:
    """Participant-owned payload replicated by the transport."""

    display_name: str = ""
    avatar_url: str = ""
    is_hand_raised: bool = False
    is_sharing: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "ParticipantMetadata":
        if not payload:
            return cls()
        return cls(
            display_name=str(payload.get("displayName") or ""),
            avatar_url=str(payload.get("avatarUrl") or ""),
            is_hand_raised=bool(payload.get("isHandRaised", False)),
            is_sharing=bool(payload.get("isSharing", False)),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "isHandRaised": self.is_hand_raised,
            "isSharing": self.is_sharing,
        }

    def with_hand(self, raised: bool) -> "ParticipantMetadata":
        return replace(self, is_hand_raised=raised)


@dataclass(slots=True)
class MediaState:
    """Locally observed media flags. Never replicated."""

    muted: bool = False
    video_off: bool = False
    speaking_level: int = 0

    def reset(self) -> None:
        self.muted = False
        self.video_off = False
        self.speaking_level = 0


@dataclass(slots=True)
class Participant:
    """One peer currently associated with the room."""

    peer_id: str
    role: ParticipantRole = ParticipantRole.LISTENER
    metadata: ParticipantMetadata | None = None
    media: MediaState = field(default_factory=MediaState)

    @property
    def display_name(self) -> str:
        return display_name_fallback(self.peer_id, self.metadata)

    @property
    def avatar_url(self) -> str:
        return avatar_fallback(self.peer_id, self.metadata)


@dataclass(frozen=True, slots=True)
class Room:
    """Room descriptor returned by the backend before joining."""

    room_id: str
    title: str
    is_live: bool = True
    host_id: str | None = None
    host_key: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class ReactionEvent:
    """A short-lived reaction shown over a participant card."""

    sender_id: str
    payload: str
    label: str = "emoji"
    received_at: float = field(default_factory=time.monotonic)


def display_name_fallback(peer_id: str, metadata: ParticipantMetadata | None) -> str:
    if metadata is not None and metadata.display_name:
        return metadata.display_name
    return peer_id[:SHORT_LABEL_LENGTH]


def avatar_fallback(peer_id: str, metadata: ParticipantMetadata | None) -> str:
    if metadata is not None and metadata.avatar_url:
        return metadata.avatar_url
    return PLACEHOLDER_AVATAR_URL.format(seed=peer_id)


__all__ = [
    "MAX_SPEAKING_LEVEL",
    "MediaState",
    "Participant",
    "ParticipantMetadata",
    "ParticipantRole",
    "ReactionEvent",
    "Room",
    "avatar_fallback",
    "display_name_fallback",
]
