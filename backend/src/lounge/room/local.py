"""Local participant state: own metadata, media toggles and outbound signals."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable

from .capability import (
    BROADCAST,
    MetadataUpdated,
    MuteRequested,
    RoleChanged,
    RoomJoined,
    RoomLeft,
    RoomTransport,
    TransportEvent,
)
from .errors import HostOnlyActionError, TransportError
from .messages import EmojiReaction, SpeakerRequest
from .models import MediaState, ParticipantMetadata, ParticipantRole
from .registry import PeerRegistry
from .relay import MessageRelay

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Anonymous"


class LocalParticipantController:
    """Own and broadcast the local participant's metadata.

    Hand raising goes through the transport metadata channel. Mute and video
    toggles stay local and only trigger a re-render of the local card.
    """

    def __init__(
        self,
        transport: RoomTransport,
        relay: MessageRelay,
        registry: PeerRegistry,
        *,
        display_name: str = "",
        avatar_url: str = "",
    ) -> None:
        self._transport = transport
        self._relay = relay
        self._registry = registry
        self._metadata = ParticipantMetadata(display_name=display_name, avatar_url=avatar_url)
        self._media = MediaState()
        self._role = ParticipantRole.LISTENER
        self._peer_id: str | None = None
        self._listeners: list[Callable[[], None]] = []
        self._detach = transport.add_listener(self.handle_event)

    def close(self) -> None:
        self._detach()
        self._listeners.clear()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def role(self) -> ParticipantRole:
        return self._role

    @property
    def is_host(self) -> bool:
        return self._role is ParticipantRole.HOST

    @property
    def metadata(self) -> ParticipantMetadata:
        return self._metadata

    @property
    def has_profile(self) -> bool:
        return bool(self._metadata.display_name or self._metadata.avatar_url)

    @property
    def media(self) -> MediaState:
        return self._media

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Metadata mutations
    # ------------------------------------------------------------------
    async def announce(self) -> bool:
        """Broadcast the configured profile after joining; returns whether anything was sent."""

        if self._peer_id is None or not self.has_profile:
            return False
        await self._broadcast_metadata()
        return True

    async def set_profile(self, *, display_name: str | None = None, avatar_url: str | None = None) -> None:
        changes: dict[str, str] = {}
        if display_name is not None:
            changes["display_name"] = display_name
        if avatar_url is not None:
            changes["avatar_url"] = avatar_url
        if not changes:
            return
        self._metadata = replace(self._metadata, **changes)
        self._notify()
        await self._broadcast_metadata()

    async def raise_hand(self) -> bool:
        """Raise the local hand; repeated calls are no-ops."""

        if self._metadata.is_hand_raised:
            return False
        self._metadata = self._metadata.with_hand(True)
        self._notify()
        await self._broadcast_metadata()
        return True

    async def lower_hand(self) -> bool:
        if not self._metadata.is_hand_raised:
            return False
        self._metadata = self._metadata.with_hand(False)
        self._notify()
        await self._broadcast_metadata()
        return True

    # ------------------------------------------------------------------
    # Local media toggles
    # ------------------------------------------------------------------
    def toggle_mute(self) -> bool:
        self._media.muted = not self._media.muted
        self._notify()
        return self._media.muted

    def toggle_video(self) -> bool:
        self._media.video_off = not self._media.video_off
        self._notify()
        return self._media.video_off

    # ------------------------------------------------------------------
    # Outbound signals
    # ------------------------------------------------------------------
    async def send_reaction(self, emoji: str) -> bool:
        return await self._relay.send(BROADCAST, EmojiReaction(emoji))

    async def request_to_speak(self) -> bool:
        if self._peer_id is None:
            return False
        peers = self._registry.list()
        if not peers:
            return False
        return await self._relay.send(peers, SpeakerRequest(self._peer_id))

    async def mute_everyone(self) -> bool:
        if not self.is_host:
            raise HostOnlyActionError("mute everyone")
        try:
            await self._transport.mute_everyone()
        except TransportError:
            logger.warning("Room transport rejected mute-everyone request", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------
    def handle_event(self, event: TransportEvent) -> None:
        match event:
            case RoomJoined(local_peer_id=peer_id, role=role, metadata=metadata):
                self._peer_id = peer_id
                self._role = role
                if metadata is not None and not self.has_profile:
                    self._metadata = metadata
                self._notify()
            case MetadataUpdated(peer_id=peer_id, metadata=metadata) if peer_id == self._peer_id:
                self._metadata = metadata
                self._notify()
            case RoleChanged(peer_id=peer_id, role=role) if peer_id == self._peer_id:
                self._role = role
                self._notify()
            case MuteRequested():
                if not self._media.muted:
                    self._media.muted = True
                    self._notify()
            case RoomLeft():
                self._peer_id = None
                self._media.reset()
                self._notify()
            case _:
                return

    async def _broadcast_metadata(self) -> None:
        if self._peer_id is None:
            return
        payload = self._metadata
        if not payload.display_name:
            payload = replace(payload, display_name=DEFAULT_DISPLAY_NAME)
        try:
            await self._transport.update_metadata(payload)
        except TransportError:
            logger.warning("Failed to broadcast local metadata", exc_info=logger.isEnabledFor(logging.DEBUG))
        except Exception:
            logger.exception("Unexpected error while broadcasting local metadata")

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Local participant listener failed")


__all__ = ["DEFAULT_DISPLAY_NAME", "LocalParticipantController"]
