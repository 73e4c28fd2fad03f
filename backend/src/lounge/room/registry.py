"""Read projection of the room membership reported by the transport."""

from __future__ import annotations

import logging
from typing import Callable

from .capability import (
    MetadataUpdated,
    PeerJoined,
    PeerLeft,
    RoleChanged,
    RoomJoined,
    RoomLeft,
    RoomTransport,
    TransportEvent,
)
from .models import (
    Participant,
    ParticipantMetadata,
    ParticipantRole,
    avatar_fallback,
    display_name_fallback,
)

logger = logging.getLogger(__name__)

RegistryListener = Callable[[str | None], None]


class PeerRegistry:
    """Track remote participants keyed by peer id.

    Entries are created on join, updated on metadata or role changes, and
    dropped on leave. The local peer is never listed. Listeners receive the
    affected peer id, or ``None`` when the whole registry was reset.
    """

    def __init__(self) -> None:
        self._participants: dict[str, Participant] = {}
        self._local_peer_id: str | None = None
        self._listeners: list[RegistryListener] = []
        self._detach: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------
    def attach(self, transport: RoomTransport) -> None:
        if self._detach is not None:
            self._detach()
        self._detach = transport.add_listener(self.handle_event)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def add_listener(self, listener: RegistryListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def local_peer_id(self) -> str | None:
        return self._local_peer_id

    def list(self) -> list[str]:
        return list(self._participants)

    def get(self, peer_id: str) -> Participant | None:
        return self._participants.get(peer_id)

    def metadata_of(self, peer_id: str) -> ParticipantMetadata | None:
        participant = self._participants.get(peer_id)
        return participant.metadata if participant is not None else None

    def role_of(self, peer_id: str) -> ParticipantRole | None:
        participant = self._participants.get(peer_id)
        return participant.role if participant is not None else None

    def speakers(self) -> list[str]:
        return [
            peer_id
            for peer_id, participant in self._participants.items()
            if participant.role.is_speaking_role
        ]

    def display_name_for(self, peer_id: str) -> str:
        return display_name_fallback(peer_id, self.metadata_of(peer_id))

    def avatar_for(self, peer_id: str) -> str:
        return avatar_fallback(peer_id, self.metadata_of(peer_id))

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._participants

    def __len__(self) -> int:
        return len(self._participants)

    # ------------------------------------------------------------------
    # Transport events
    # ------------------------------------------------------------------
    def handle_event(self, event: TransportEvent) -> None:
        match event:
            case RoomJoined(local_peer_id=local_peer_id):
                self._local_peer_id = local_peer_id
                if self._participants.pop(local_peer_id, None) is not None:
                    self._notify(local_peer_id)
            case PeerJoined(peer_id=peer_id, role=role, metadata=metadata):
                self._upsert(peer_id, role=role, metadata=metadata)
            case PeerLeft(peer_id=peer_id):
                self._remove(peer_id)
            case MetadataUpdated(peer_id=peer_id, metadata=metadata):
                self._update_metadata(peer_id, metadata)
            case RoleChanged(peer_id=peer_id, role=role):
                self._update_role(peer_id, role)
            case RoomLeft():
                self.clear()
            case _:
                return

    def clear(self) -> None:
        if not self._participants:
            return
        for participant in self._participants.values():
            participant.media.reset()
        self._participants.clear()
        self._notify(None)

    def _upsert(
        self,
        peer_id: str,
        *,
        role: ParticipantRole,
        metadata: ParticipantMetadata | None,
    ) -> None:
        if peer_id == self._local_peer_id:
            return
        participant = self._participants.get(peer_id)
        if participant is None:
            self._participants[peer_id] = Participant(peer_id=peer_id, role=role, metadata=metadata)
            logger.debug("Peer %s joined as %s", peer_id, role.value)
        else:
            # A repeated join for a known id refreshes the entry in place.
            participant.role = role
            if metadata is not None:
                participant.metadata = metadata
        self._notify(peer_id)

    def _remove(self, peer_id: str) -> None:
        participant = self._participants.pop(peer_id, None)
        if participant is None:
            return
        participant.media.reset()
        logger.debug("Peer %s left", peer_id)
        self._notify(peer_id)

    def _update_metadata(self, peer_id: str, metadata: ParticipantMetadata) -> None:
        participant = self._participants.get(peer_id)
        if participant is None:
            return
        participant.metadata = metadata
        self._notify(peer_id)

    def _update_role(self, peer_id: str, role: ParticipantRole) -> None:
        participant = self._participants.get(peer_id)
        if participant is None or participant.role == role:
            return
        participant.role = role
        self._notify(peer_id)

    def _notify(self, peer_id: str | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(peer_id)
            except Exception:
                logger.exception("Registry listener failed")


__all__ = ["PeerRegistry", "RegistryListener"]
