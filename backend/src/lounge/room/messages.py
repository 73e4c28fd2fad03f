"""Closed set of ephemeral data messages relayed between participants.

The transport only carries ``(label, payload)`` string pairs. Each label maps
to exactly one message kind below and anything else is rejected, so both the
relay and the server validate traffic against the same table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Union

logger = logging.getLogger(__name__)

EMOJI_LABEL = "emoji"
SPEAKER_REQUEST_LABEL = "speakerRequest"
WHISPER_LABEL = "whisper"

MAX_EMOJI_LENGTH = 16
MAX_WHISPER_LENGTH = 500


class MessageFormatError(ValueError):
    """Raised when a payload does not fit the schema of its label."""


@dataclass(frozen=True, slots=True)
class EmojiReaction:
    label: ClassVar[str] = EMOJI_LABEL

    emoji: str

    @property
    def payload(self) -> str:
        return self.emoji


@dataclass(frozen=True, slots=True)
class SpeakerRequest:
    """Raised-hand equivalent sent peer to peer instead of via metadata."""

    label: ClassVar[str] = SPEAKER_REQUEST_LABEL

    requester_id: str

    @property
    def payload(self) -> str:
        return self.requester_id


@dataclass(frozen=True, slots=True)
class Whisper:
    """Private note from the host to a single participant."""

    label: ClassVar[str] = WHISPER_LABEL

    text: str

    @property
    def payload(self) -> str:
        return self.text


DataMessage = Union[EmojiReaction, SpeakerRequest, Whisper]

KNOWN_LABELS = frozenset({EMOJI_LABEL, SPEAKER_REQUEST_LABEL, WHISPER_LABEL})


def _require_text(label: str, payload: Any, limit: int) -> str:
    if not isinstance(payload, str):
        raise MessageFormatError(f"'{label}' payload must be a string")
    text = payload.strip()
    if not text:
        raise MessageFormatError(f"'{label}' payload must not be empty")
    if len(text) > limit:
        raise MessageFormatError(f"'{label}' payload exceeds {limit} characters")
    return text


def parse_message(label: Any, payload: Any) -> DataMessage:
    """Build the typed message for *label* or raise ``MessageFormatError``."""

    match label:
        case "emoji":
            return EmojiReaction(_require_text(label, payload, MAX_EMOJI_LENGTH))
        case "speakerRequest":
            return SpeakerRequest(_require_text(label, payload, 256))
        case "whisper":
            return Whisper(_require_text(label, payload, MAX_WHISPER_LENGTH))
        case _:
            raise MessageFormatError(f"Unsupported message label {label!r}")


def decode_message(label: Any, payload: Any) -> DataMessage | None:
    """Lenient variant of :func:`parse_message` used on the receive path."""

    try:
        return parse_message(label, payload)
    except MessageFormatError as exc:
        logger.debug("Dropped inbound data message: %s", exc)
        return None


def encode_message(message: DataMessage) -> tuple[str, str]:
    """Return the ``(label, payload)`` pair carried by the transport."""

    return message.label, message.payload


__all__ = [
    "DataMessage",
    "EMOJI_LABEL",
    "EmojiReaction",
    "KNOWN_LABELS",
    "MessageFormatError",
    "SPEAKER_REQUEST_LABEL",
    "SpeakerRequest",
    "WHISPER_LABEL",
    "Whisper",
    "decode_message",
    "encode_message",
    "parse_message",
]
