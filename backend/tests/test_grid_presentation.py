"""Tests for participant cards and the grid container."""

from __future__ import annotations

import asyncio
import random

import pytest

from lounge.room.capability import DataReceived, MetadataUpdated, PeerJoined, PeerLeft, RoleChanged
from lounge.room.errors import HostOnlyActionError
from lounge.client.config import ClientSettings
from lounge.room.grid import Affordance, AudioLevelMeter, GridPresentation, RandomSpeakingMeter
from lounge.room.local import LocalParticipantController
from lounge.room.models import MAX_SPEAKING_LEVEL, ParticipantMetadata, ParticipantRole
from lounge.room.registry import PeerRegistry
from lounge.room.relay import MessageRelay

WINDOW = 0.1
TICK = 0.01


class FixedMeter:
    def __init__(self, level: int) -> None:
        self.level = level

    def sample(self) -> int:
        return self.level


async def _mounted_grid(
    transport,
    *,
    role: ParticipantRole = ParticipantRole.HOST,
    remote_window: float = WINDOW,
    local_window: float = WINDOW,
) -> GridPresentation:
    transport.role = role
    registry = PeerRegistry()
    registry.attach(transport)
    relay = MessageRelay(transport)
    local = LocalParticipantController(transport, relay, registry, display_name="Priscilla")
    grid = GridPresentation(
        registry,
        relay,
        local,
        transport,
        meter_factory=lambda peer_id: FixedMeter(2),
        remote_reaction_window=remote_window,
        local_reaction_window=local_window,
        tick_interval=TICK,
    )
    await transport.join_room("room", "token")
    grid.mount()
    return grid


def _card_ids(grid: GridPresentation) -> list[str]:
    return [view.peer_id for view in grid.render().cards]


@pytest.mark.anyio
async def test_cards_follow_registry_membership(fake_transport):
    grid = await _mounted_grid(fake_transport)
    renders: list[None] = []
    grid.add_listener(lambda: renders.append(None))

    fake_transport.emit(PeerJoined(peer_id="p1"))
    fake_transport.emit(PeerJoined(peer_id="p2"))
    assert _card_ids(grid) == ["p1", "p2"]

    fake_transport.emit(PeerLeft(peer_id="p1"))
    assert _card_ids(grid) == ["p2"]
    assert grid.card("p1") is None
    assert renders

    view = grid.render()
    assert view.local is not None
    assert view.local.display_name == "You"
    assert view.local.is_local is True

    grid.unmount()


@pytest.mark.anyio
async def test_remote_card_shows_only_its_own_reactions(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="p1"))
    fake_transport.emit(PeerJoined(peer_id="p2"))

    fake_transport.emit(DataReceived(sender_id="p1", label="emoji", payload="🔥"))

    views = {view.peer_id: view for view in grid.render().cards}
    assert views["p1"].reaction == "🔥"
    assert views["p2"].reaction is None
    assert grid.render().local.reaction == "🔥"

    await asyncio.sleep(WINDOW * 3)

    assert grid.card("p1").reaction is None
    assert grid.local_card.reaction is None
    assert grid.card("p1").has_pending_timers is False
    grid.unmount()


@pytest.mark.anyio
async def test_local_card_reaction_clears_before_remote_card(fake_transport):
    grid = await _mounted_grid(fake_transport, remote_window=WINDOW * 3, local_window=WINDOW)
    fake_transport.emit(PeerJoined(peer_id="p1"))

    fake_transport.emit(DataReceived(sender_id="p1", label="emoji", payload="🎉"))
    assert grid.card("p1").reaction == "🎉"
    assert grid.local_card.reaction == "🎉"

    await asyncio.sleep(WINDOW * 1.8)
    assert grid.local_card.reaction is None
    assert grid.card("p1").reaction == "🎉"

    await asyncio.sleep(WINDOW * 2)
    assert grid.card("p1").reaction is None
    grid.unmount()


@pytest.mark.anyio
async def test_reaction_windows_default_to_three_and_two_seconds(fake_transport):
    registry = PeerRegistry()
    relay = MessageRelay(fake_transport)
    local = LocalParticipantController(fake_transport, relay, registry)
    grid = GridPresentation(registry, relay, local, fake_transport)

    assert grid._remote_window == 3.0
    assert grid.local_card._overlay._window == 2.0

    settings = ClientSettings()
    assert settings.remote_reaction_window_seconds == 3.0
    assert settings.local_reaction_window_seconds == 2.0


@pytest.mark.anyio
async def test_newer_reaction_replaces_current_one(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="p1"))

    fake_transport.emit(DataReceived(sender_id="p1", label="emoji", payload="🔥"))
    await asyncio.sleep(WINDOW * 0.6)
    fake_transport.emit(DataReceived(sender_id="p1", label="emoji", payload="💖"))
    await asyncio.sleep(WINDOW * 0.6)

    assert grid.card("p1").reaction == "💖"

    await asyncio.sleep(WINDOW)
    assert grid.card("p1").reaction is None
    grid.unmount()


@pytest.mark.anyio
async def test_speaking_level_animates_only_for_speakers(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="speaker", role=ParticipantRole.SPEAKER))
    fake_transport.emit(PeerJoined(peer_id="listener"))

    await asyncio.sleep(TICK * 5)

    views = {view.peer_id: view for view in grid.render().cards}
    assert views["speaker"].speaking_level == 2
    assert views["speaker"].is_speaker is True
    assert views["listener"].speaking_level == 0
    assert grid.card("listener").has_pending_timers is False

    fake_transport.emit(RoleChanged(peer_id="speaker", role=ParticipantRole.LISTENER))
    assert grid.card("speaker").speaking_level == 0
    assert grid.card("speaker").has_pending_timers is False
    grid.unmount()


@pytest.mark.anyio
async def test_unmount_releases_timers_and_subscriptions(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="p1", role=ParticipantRole.SPEAKER))
    fake_transport.emit(DataReceived(sender_id="p1", label="emoji", payload="🔥"))
    card = grid.card("p1")
    relay = grid._relay
    assert card.has_pending_timers is True
    assert relay.subscription_count == 2

    grid.unmount()

    assert card.has_pending_timers is False
    assert card.mounted is False
    assert relay.subscription_count == 0
    assert grid.local_card.has_pending_timers is False


@pytest.mark.anyio
async def test_host_sees_moderation_affordances(fake_transport):
    grid = await _mounted_grid(fake_transport, role=ParticipantRole.HOST)
    fake_transport.emit(PeerJoined(peer_id="p1"))

    view = grid.render().cards[0]
    assert view.can(Affordance.PIN)
    assert view.can(Affordance.REMOVE)
    assert view.can(Affordance.WHISPER)
    assert not view.can(Affordance.APPROVE)

    fake_transport.emit(MetadataUpdated(peer_id="p1", metadata=ParticipantMetadata(is_hand_raised=True)))

    view = grid.render().cards[0]
    assert view.hand_raised is True
    assert view.can(Affordance.APPROVE)
    grid.unmount()


@pytest.mark.anyio
async def test_listener_cannot_moderate(fake_transport):
    grid = await _mounted_grid(fake_transport, role=ParticipantRole.LISTENER)
    fake_transport.emit(PeerJoined(peer_id="p1", metadata=ParticipantMetadata(is_hand_raised=True)))

    view = grid.render().cards[0]
    assert view.affordances == frozenset({Affordance.TOGGLE_MUTE, Affordance.TOGGLE_VIDEO})

    with pytest.raises(HostOnlyActionError):
        grid.pin("p1")
    with pytest.raises(HostOnlyActionError):
        await grid.approve("p1")
    with pytest.raises(HostOnlyActionError):
        await grid.remove("p1")
    with pytest.raises(HostOnlyActionError):
        await grid.whisper("p1", "hello")

    assert fake_transport.role_updates == []
    assert fake_transport.kicked == []
    assert fake_transport.sent == []
    grid.unmount()


@pytest.mark.anyio
async def test_host_actions_reach_the_transport(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="p1"))

    assert await grid.approve("p1") is False

    fake_transport.emit(MetadataUpdated(peer_id="p1", metadata=ParticipantMetadata(is_hand_raised=True)))
    assert await grid.approve("p1") is True
    assert await grid.whisper("p1", "You're next") is True
    assert await grid.remove("p1") is True
    assert await grid.remove("ghost") is False

    assert fake_transport.role_updates == [("p1", ParticipantRole.SPEAKER)]
    assert fake_transport.sent == [(["p1"], "You're next", "whisper")]
    assert fake_transport.kicked == ["p1"]
    grid.unmount()


@pytest.mark.anyio
async def test_pin_is_single_and_cleared_when_peer_leaves(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="p1"))
    fake_transport.emit(PeerJoined(peer_id="p2"))

    grid.pin("p1")
    grid.pin("p2")
    grid.pin("ghost")

    pinned = [view.peer_id for view in grid.render().cards if view.pinned]
    assert pinned == ["p2"]
    assert grid.pinned_id == "p2"

    fake_transport.emit(PeerLeft(peer_id="p2"))
    assert grid.pinned_id is None
    grid.unmount()


@pytest.mark.anyio
async def test_remote_media_toggles_are_local_only(fake_transport):
    grid = await _mounted_grid(fake_transport)
    fake_transport.emit(PeerJoined(peer_id="p1"))

    assert grid.card("p1").toggle_mute() is True
    assert grid.card("p1").toggle_video() is True

    view = grid.render().cards[0]
    assert view.muted is True
    assert view.video_off is True
    assert fake_transport.metadata_updates == []
    grid.unmount()


def test_meters_stay_within_bar_range():
    meter = RandomSpeakingMeter(random.Random(7))
    assert all(0 <= meter.sample() <= MAX_SPEAKING_LEVEL for _ in range(50))

    levels = iter([0.0, 0.1, 0.3, 0.9])
    audio = AudioLevelMeter(lambda: next(levels))
    assert [audio.sample() for _ in range(4)] == [0, 1, 2, 3]

    with pytest.raises(ValueError):
        AudioLevelMeter(lambda: 0.0, thresholds=(0.1,))
