"""Tests for the local participant controller."""

from __future__ import annotations

import pytest

from lounge.room.capability import MetadataUpdated, MuteRequested, PeerJoined, RoleChanged, RoomJoined, RoomLeft
from lounge.room.errors import HostOnlyActionError
from lounge.room.local import LocalParticipantController
from lounge.room.models import ParticipantMetadata, ParticipantRole
from lounge.room.registry import PeerRegistry
from lounge.room.relay import MessageRelay


def _controller(transport, *, role: ParticipantRole = ParticipantRole.LISTENER, display_name: str = "Lydia"):
    registry = PeerRegistry()
    registry.attach(transport)
    relay = MessageRelay(transport)
    controller = LocalParticipantController(transport, relay, registry, display_name=display_name)
    transport.emit(RoomJoined(room_id="room", local_peer_id="local-peer", role=role))
    return controller, registry


@pytest.mark.anyio
async def test_raise_hand_broadcasts_metadata_once(fake_transport):
    controller, _ = _controller(fake_transport)

    assert await controller.raise_hand() is True
    assert await controller.raise_hand() is False

    assert controller.metadata.is_hand_raised is True
    assert fake_transport.metadata_updates == [ParticipantMetadata(display_name="Lydia", is_hand_raised=True)]

    assert await controller.lower_hand() is True
    assert fake_transport.metadata_updates[-1].is_hand_raised is False


@pytest.mark.anyio
async def test_configured_profile_is_announced_after_joining(fake_transport):
    registry = PeerRegistry()
    relay = MessageRelay(fake_transport)
    controller = LocalParticipantController(
        fake_transport, relay, registry, display_name="Lydia", avatar_url="https://cdn.example/lydia.png"
    )
    assert await controller.announce() is False

    fake_transport.emit(
        RoomJoined(
            room_id="room",
            local_peer_id="local-peer",
            role=ParticipantRole.LISTENER,
            metadata=ParticipantMetadata(display_name="server-default"),
        )
    )
    assert await controller.announce() is True

    assert fake_transport.metadata_updates == [
        ParticipantMetadata(display_name="Lydia", avatar_url="https://cdn.example/lydia.png")
    ]


@pytest.mark.anyio
async def test_nothing_is_announced_without_a_profile(fake_transport):
    controller, _ = _controller(fake_transport, display_name="")

    assert controller.has_profile is False
    assert await controller.announce() is False
    assert fake_transport.metadata_updates == []


@pytest.mark.anyio
async def test_metadata_without_name_is_sent_as_anonymous(fake_transport):
    controller, _ = _controller(fake_transport, display_name="")

    await controller.raise_hand()

    assert fake_transport.metadata_updates[-1].display_name == "Anonymous"


@pytest.mark.anyio
async def test_metadata_is_not_sent_before_joining(fake_transport):
    registry = PeerRegistry()
    relay = MessageRelay(fake_transport)
    controller = LocalParticipantController(fake_transport, relay, registry)

    assert await controller.raise_hand() is True
    assert fake_transport.metadata_updates == []


def test_media_toggles_stay_local(fake_transport):
    controller, _ = _controller(fake_transport)
    notified: list[None] = []
    controller.add_listener(lambda: notified.append(None))

    assert controller.toggle_mute() is True
    assert controller.toggle_video() is True
    assert controller.toggle_mute() is False

    assert controller.media.muted is False
    assert controller.media.video_off is True
    assert fake_transport.metadata_updates == []
    assert len(notified) == 3


@pytest.mark.anyio
async def test_reaction_is_broadcast(fake_transport):
    controller, _ = _controller(fake_transport)

    assert await controller.send_reaction("🎉") is True

    assert fake_transport.sent == [("*", "🎉", "emoji")]


@pytest.mark.anyio
async def test_request_to_speak_targets_every_known_peer(fake_transport):
    controller, _ = _controller(fake_transport)
    assert await controller.request_to_speak() is False

    fake_transport.emit(PeerJoined(peer_id="host-peer", role=ParticipantRole.HOST))
    fake_transport.emit(PeerJoined(peer_id="p2"))

    assert await controller.request_to_speak() is True
    assert fake_transport.sent == [(["host-peer", "p2"], "local-peer", "speakerRequest")]


@pytest.mark.anyio
async def test_mute_everyone_is_host_only(fake_transport):
    controller, _ = _controller(fake_transport, role=ParticipantRole.LISTENER)

    with pytest.raises(HostOnlyActionError):
        await controller.mute_everyone()
    assert fake_transport.mute_requests == 0

    fake_transport.emit(RoleChanged(peer_id="local-peer", role=ParticipantRole.HOST))
    assert await controller.mute_everyone() is True
    assert fake_transport.mute_requests == 1


def test_mute_request_mutes_local_participant(fake_transport):
    controller, _ = _controller(fake_transport)

    fake_transport.emit(MuteRequested(requested_by="host-peer"))

    assert controller.media.muted is True


def test_server_side_metadata_changes_are_adopted(fake_transport):
    controller, _ = _controller(fake_transport)
    controller_metadata = ParticipantMetadata(display_name="Lydia", is_hand_raised=False)

    fake_transport.emit(MetadataUpdated(peer_id="local-peer", metadata=controller_metadata))
    fake_transport.emit(RoleChanged(peer_id="local-peer", role=ParticipantRole.SPEAKER))
    fake_transport.emit(MetadataUpdated(peer_id="someone-else", metadata=ParticipantMetadata(display_name="X")))

    assert controller.metadata == controller_metadata
    assert controller.role is ParticipantRole.SPEAKER


def test_room_left_resets_media(fake_transport):
    controller, _ = _controller(fake_transport)
    controller.toggle_mute()

    fake_transport.emit(RoomLeft(reason="kicked"))

    assert controller.peer_id is None
    assert controller.media.muted is False
