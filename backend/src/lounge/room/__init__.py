"""Client-side coordination of a live audio room."""

from .capability import (  # noqa: F401
    BROADCAST,
    RoomBackend,
    RoomTransport,
    StaticTokenProvider,
    TokenProvider,
)
from .errors import (  # noqa: F401
    HostOnlyActionError,
    JoinError,
    RoomCreationError,
    RoomError,
    TokenError,
    TransportError,
)
from .grid import (  # noqa: F401
    Affordance,
    AudioLevelMeter,
    CardView,
    GridPresentation,
    GridView,
    RandomSpeakingMeter,
)
from .local import LocalParticipantController  # noqa: F401
from .messages import EmojiReaction, SpeakerRequest, Whisper  # noqa: F401
from .models import ParticipantMetadata, ParticipantRole, Room  # noqa: F401
from .registry import PeerRegistry  # noqa: F401
from .relay import MessageRelay  # noqa: F401
from .session import RetryPolicy, RoomSessionController, SessionFailure, SessionState  # noqa: F401

__all__ = [
    "BROADCAST",
    "RoomBackend",
    "RoomTransport",
    "StaticTokenProvider",
    "TokenProvider",
    "HostOnlyActionError",
    "JoinError",
    "RoomCreationError",
    "RoomError",
    "TokenError",
    "TransportError",
    "Affordance",
    "AudioLevelMeter",
    "CardView",
    "GridPresentation",
    "GridView",
    "RandomSpeakingMeter",
    "LocalParticipantController",
    "EmojiReaction",
    "SpeakerRequest",
    "Whisper",
    "ParticipantMetadata",
    "ParticipantRole",
    "Room",
    "PeerRegistry",
    "MessageRelay",
    "RetryPolicy",
    "RoomSessionController",
    "SessionFailure",
    "SessionState",
]
