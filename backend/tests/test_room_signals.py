"""Tests for the server-side room signal manager."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from app.monitoring.metrics import realtime_publish_errors_total, room_requests_rejected_total
from lounge.realtime.signals import CLOSE_REMOVED, CLOSE_ROOM_ENDED, RoomSignalManager
from lounge.realtime.transport import BrokerConfig, RedisTransport, Subscription
from lounge.room.models import ParticipantMetadata, ParticipantRole

ROOM = "abc-defg-hij"


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


class SlowWebSocket(DummyWebSocket):
    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def send_json(self, payload: dict[str, Any]) -> None:
        await asyncio.sleep(self.delay)
        await super().send_json(payload)


class FailingRedis:
    async def publish(self, channel: str, payload: str) -> None:  # pragma: no cover - used in tests
        raise ConnectionError("boom")

    async def close(self) -> None:
        return None


class InMemoryBus:
    """Pub/sub stand-in linking several managers as if they ran on separate nodes."""

    connected = True

    def __init__(self) -> None:
        self.handlers: list[Any] = []
        self.published: list[dict[str, Any]] = []

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        self.published.append(payload)
        for handler in list(self.handlers):
            await handler(json.loads(json.dumps(payload)))

    async def subscribe(self, topic: str, handler: Any) -> Subscription:
        self.handlers.append(handler)

        async def cleanup() -> None:
            self.handlers.remove(handler)

        return Subscription(topic, cleanup)


async def _linked_nodes(*node_ids: str) -> list[RoomSignalManager]:
    bus = InMemoryBus()
    managers = [RoomSignalManager(bus, node_id=node_id) for node_id in node_ids]  # type: ignore[arg-type]
    for manager in managers:
        await manager.start()
    return managers


@pytest.fixture(autouse=True)
def reset_metrics() -> None:
    realtime_publish_errors_total.clear()
    room_requests_rejected_total.clear()
    yield
    realtime_publish_errors_total.clear()
    room_requests_rejected_total.clear()


async def _join(manager: RoomSignalManager, role: ParticipantRole, user_id: str):
    websocket = DummyWebSocket()
    participant, snapshot = await manager.register(ROOM, websocket, user_id=user_id, role=role)
    return participant, websocket, snapshot


@pytest.mark.anyio
async def test_register_returns_snapshot_and_announces_peer():
    manager = RoomSignalManager(None, node_id="node")
    host, host_ws, host_snapshot = await _join(manager, ParticipantRole.HOST, "queen-1")
    listener, listener_ws, listener_snapshot = await _join(manager, ParticipantRole.LISTENER, "guest")

    assert host_snapshot == []
    assert listener_snapshot == [host.to_public()]
    assert host_ws.types() == ["welcome", "peers", "peer-joined"]
    assert host_ws.sent[0]["peerId"] == host.peer_id
    assert host_ws.sent[2] == {"type": "peer-joined", "peer": listener.to_public()}
    assert listener_ws.types() == ["welcome", "peers"]
    assert listener_ws.sent[1] == {"type": "peers", "peers": [host.to_public()]}
    assert await manager.participant_count(ROOM) == 2

    await manager.unregister(ROOM, listener.peer_id)
    assert host_ws.sent[-1] == {"type": "peer-left", "peerId": listener.peer_id}
    assert await manager.snapshot(ROOM) == [host.to_public()]


@pytest.mark.anyio
async def test_concurrent_joins_receive_welcome_before_other_frames():
    manager = RoomSignalManager(None, node_id="node")
    existing_ws = SlowWebSocket(0.01)
    existing, _ = await manager.register(ROOM, existing_ws, user_id="queen-1", role=ParticipantRole.HOST)
    sockets = [SlowWebSocket(0.001), SlowWebSocket(0.002)]

    results = await asyncio.gather(
        *(
            manager.register(ROOM, websocket, user_id=f"guest-{index}", role=ParticipantRole.LISTENER)
            for index, websocket in enumerate(sockets)
        ),
        manager.relay_data(ROOM, existing.peer_id, to="*", label="emoji", payload="🙏"),
    )
    first, second = (participant for participant, _ in results[:2])

    for websocket, own, other in ((sockets[0], first, second), (sockets[1], second, first)):
        assert websocket.types()[:2] == ["welcome", "peers"]
        assert websocket.sent[0]["peerId"] == own.peer_id
        snapshot_ids = {peer["peerId"] for peer in websocket.sent[1]["peers"]}
        announced = {frame["peer"]["peerId"] for frame in websocket.sent[2:] if frame["type"] == "peer-joined"}
        assert existing.peer_id in snapshot_ids
        assert other.peer_id in snapshot_ids | announced
        assert "welcome" not in websocket.types()[1:]


@pytest.mark.anyio
async def test_metadata_updates_are_broadcast_once():
    manager = RoomSignalManager(None, node_id="node")
    host, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    listener, listener_ws, _ = await _join(manager, ParticipantRole.LISTENER, "guest")
    host_ws.sent.clear()

    metadata = {"displayName": "Martha", "isHandRaised": True}
    public, changed, error = await manager.update_metadata(ROOM, listener.peer_id, metadata)
    assert error is None and changed is True
    assert public["metadata"]["isHandRaised"] is True

    _, changed_again, _ = await manager.update_metadata(ROOM, listener.peer_id, metadata)
    assert changed_again is False
    assert host_ws.types() == ["peer-updated"]

    _, _, error = await manager.update_metadata(ROOM, listener.peer_id, "nope")
    assert error == "Metadata must be an object"


@pytest.mark.anyio
async def test_data_relay_broadcast_and_unicast():
    manager = RoomSignalManager(None, node_id="node")
    host, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, alice_ws, _ = await _join(manager, ParticipantRole.LISTENER, "alice")
    bob, bob_ws, _ = await _join(manager, ParticipantRole.LISTENER, "bob")
    for websocket in (host_ws, alice_ws, bob_ws):
        websocket.sent.clear()

    assert await manager.relay_data(ROOM, alice.peer_id, to="*", label="emoji", payload="🔥") is None
    assert alice_ws.sent == []
    assert host_ws.sent == bob_ws.sent == [{"type": "data", "from": alice.peer_id, "label": "emoji", "payload": "🔥"}]

    assert (
        await manager.relay_data(ROOM, alice.peer_id, to=[host.peer_id], label="speakerRequest", payload=alice.peer_id)
        is None
    )
    assert host_ws.sent[-1]["label"] == "speakerRequest"
    assert len(bob_ws.sent) == 1


@pytest.mark.anyio
async def test_data_relay_rejects_invalid_messages():
    manager = RoomSignalManager(None, node_id="node")
    host, _, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, _, _ = await _join(manager, ParticipantRole.LISTENER, "alice")

    assert await manager.relay_data(ROOM, alice.peer_id, to="*", label="applause", payload="👏") is not None
    assert await manager.relay_data(ROOM, alice.peer_id, to="*", label="emoji", payload="") is not None
    assert (
        await manager.relay_data(ROOM, alice.peer_id, to=[host.peer_id], label="whisper", payload="psst")
        == "Only the host may whisper"
    )
    assert (
        await manager.relay_data(ROOM, alice.peer_id, to=[host.peer_id], label="speakerRequest", payload=host.peer_id)
        == "Speaker requests must name the sender"
    )
    assert await manager.relay_data(ROOM, alice.peer_id, to=42, label="emoji", payload="🔥") is not None
    assert room_requests_rejected_total.value("data", "forbidden") == 2.0


@pytest.mark.anyio
async def test_host_whisper_reaches_only_the_target():
    manager = RoomSignalManager(None, node_id="node")
    host, _, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, alice_ws, _ = await _join(manager, ParticipantRole.LISTENER, "alice")
    bob, bob_ws, _ = await _join(manager, ParticipantRole.LISTENER, "bob")
    alice_ws.sent.clear()
    bob_ws.sent.clear()

    assert await manager.relay_data(ROOM, host.peer_id, to=[alice.peer_id], label="whisper", payload="psst") is None

    assert alice_ws.sent == [{"type": "data", "from": host.peer_id, "label": "whisper", "payload": "psst"}]
    assert bob_ws.sent == []


@pytest.mark.anyio
async def test_set_role_is_host_only_and_clears_hand():
    manager = RoomSignalManager(None, node_id="node")
    host, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, _, _ = await _join(manager, ParticipantRole.LISTENER, "alice")
    await manager.update_metadata(ROOM, alice.peer_id, {"displayName": "Alice", "isHandRaised": True})

    _, _, error = await manager.set_role(ROOM, host.peer_id, "listener", actor_id=alice.peer_id)
    assert error == "Only the host may change roles"

    public, changed, error = await manager.set_role(ROOM, alice.peer_id, "speaker", actor_id=host.peer_id)
    assert error is None and changed is True
    assert public["role"] == "speaker"
    assert public["metadata"]["isHandRaised"] is False
    assert host_ws.sent[-1] == {"type": "peer-updated", "peer": public}

    _, _, error = await manager.set_role(ROOM, host.peer_id, "listener", actor_id=host.peer_id)
    assert error == "The host role cannot be changed"


@pytest.mark.anyio
async def test_speaker_cap_is_enforced():
    manager = RoomSignalManager(None, node_id="node", max_speakers=1)
    host, _, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, _, _ = await _join(manager, ParticipantRole.LISTENER, "alice")
    bob, _, _ = await _join(manager, ParticipantRole.LISTENER, "bob")

    assert (await manager.set_role(ROOM, alice.peer_id, "speaker", actor_id=host.peer_id))[2] is None
    assert (await manager.set_role(ROOM, bob.peer_id, "speaker", actor_id=host.peer_id))[2] == "Speaker limit reached"

    carol, _, _ = await _join(manager, ParticipantRole.SPEAKER, "carol")
    assert carol.role is ParticipantRole.LISTENER


@pytest.mark.anyio
async def test_remove_disconnects_target():
    manager = RoomSignalManager(None, node_id="node")
    host, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, alice_ws, _ = await _join(manager, ParticipantRole.LISTENER, "alice")

    _, _, error = await manager.remove(ROOM, host.peer_id, actor_id=alice.peer_id)
    assert error == "Only the host may remove participants"

    _, removed, error = await manager.remove(ROOM, alice.peer_id, actor_id=host.peer_id)
    assert error is None and removed is True
    assert alice_ws.sent[-1] == {"type": "removed", "reason": "kicked", "by": host.peer_id}
    assert alice_ws.close_code == CLOSE_REMOVED
    assert host_ws.sent[-1] == {"type": "peer-left", "peerId": alice.peer_id}
    assert await manager.get_participant(ROOM, alice.peer_id) is None

    assert await manager.unregister(ROOM, alice.peer_id) is None


@pytest.mark.anyio
async def test_mute_everyone_reaches_everyone_but_the_host():
    manager = RoomSignalManager(None, node_id="node")
    host, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, alice_ws, _ = await _join(manager, ParticipantRole.SPEAKER, "alice")
    host_ws.sent.clear()

    assert await manager.mute_everyone(ROOM, actor_id=alice.peer_id) == "Only the host may mute everyone"
    assert await manager.mute_everyone(ROOM, actor_id=host.peer_id) is None

    assert alice_ws.sent[-1] == {"type": "mute", "by": host.peer_id}
    assert host_ws.sent == []


@pytest.mark.anyio
async def test_end_room_closes_every_connection():
    manager = RoomSignalManager(None, node_id="node")
    _, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    _, alice_ws, _ = await _join(manager, ParticipantRole.LISTENER, "alice")

    assert await manager.end_room(ROOM) == 2

    for websocket in (host_ws, alice_ws):
        assert websocket.sent[-1] == {"type": "removed", "reason": "room-ended"}
        assert websocket.close_code == CLOSE_ROOM_ENDED
    assert await manager.participant_count(ROOM) == 0
    assert await manager.rooms_overview() == {}


@pytest.mark.anyio
async def test_remote_envelopes_are_delivered_locally():
    manager = RoomSignalManager(None, node_id="node-a")
    host, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")
    alice, alice_ws, _ = await _join(manager, ParticipantRole.LISTENER, "alice")
    host_ws.sent.clear()
    frame = {"type": "data", "from": "remote-peer", "label": "emoji", "payload": "🔥"}

    await manager._handle_remote({"room": ROOM, "payload": frame, "origin": "node-a", "to": None, "exclude": []})
    assert host_ws.sent == []

    await manager._handle_remote(
        {"room": ROOM, "payload": frame, "origin": "node-b", "to": None, "exclude": [alice.peer_id]}
    )
    assert host_ws.sent == [frame]
    assert frame not in alice_ws.sent

    await manager._handle_remote({"room": ROOM, "payload": frame, "origin": "node-b", "to": [alice.peer_id]})
    assert alice_ws.sent[-1] == frame

    await manager._handle_remote(
        {"room": ROOM, "payload": {"type": "removed", "reason": "room-ended"}, "origin": "node-b"}
    )
    assert host_ws.close_code == CLOSE_ROOM_ENDED
    assert await manager.participant_count(ROOM) == 0


@pytest.mark.anyio
async def test_joining_peer_receives_roster_from_other_nodes():
    node_a, node_b = await _linked_nodes("node-a", "node-b")
    host, host_ws, _ = await _join(node_a, ParticipantRole.HOST, "queen-1")
    alice, alice_ws, snapshot = await _join(node_b, ParticipantRole.LISTENER, "alice")

    assert snapshot == []
    assert alice_ws.types() == ["welcome", "peers", "peers"]
    assert alice_ws.sent[2]["peers"] == [host.to_public()]
    assert host_ws.types() == ["welcome", "peers", "peer-joined"]
    assert host_ws.sent[-1]["peer"] == alice.to_public()


@pytest.mark.anyio
async def test_host_controls_reach_peers_on_other_nodes():
    node_a, node_b = await _linked_nodes("node-a", "node-b")
    host, host_ws, _ = await _join(node_a, ParticipantRole.HOST, "queen-1")
    bob, _, _ = await _join(node_a, ParticipantRole.LISTENER, "bob")
    alice, alice_ws, _ = await _join(node_b, ParticipantRole.LISTENER, "alice")
    await node_b.update_metadata(ROOM, alice.peer_id, {"displayName": "Alice", "isHandRaised": True})

    _, _, error = await node_a.set_role(ROOM, alice.peer_id, "speaker", actor_id=bob.peer_id)
    assert error == "Only the host may change roles"

    assert await node_a.set_role(ROOM, alice.peer_id, "speaker", actor_id=host.peer_id) == (None, False, None)
    promoted = await node_b.get_participant(ROOM, alice.peer_id)
    assert promoted.role is ParticipantRole.SPEAKER
    assert promoted.metadata.is_hand_raised is False
    assert host_ws.sent[-1] == {"type": "peer-updated", "peer": promoted.to_public()}
    assert alice_ws.sent[-1] == {"type": "peer-updated", "peer": promoted.to_public()}

    assert await node_a.remove(ROOM, alice.peer_id, actor_id=host.peer_id) == (None, False, None)
    assert alice_ws.sent[-1] == {"type": "removed", "reason": "kicked", "by": host.peer_id}
    assert alice_ws.close_code == CLOSE_REMOVED
    assert host_ws.sent[-1] == {"type": "peer-left", "peerId": alice.peer_id}
    assert await node_b.participant_count(ROOM) == 0
    assert await node_a.participant_count(ROOM) == 2


@pytest.mark.anyio
async def test_control_for_unknown_peer_changes_nothing_on_any_node():
    node_a, node_b = await _linked_nodes("node-a", "node-b")
    host, host_ws, _ = await _join(node_a, ParticipantRole.HOST, "queen-1")
    _, alice_ws, _ = await _join(node_b, ParticipantRole.LISTENER, "alice")
    host_ws.sent.clear()
    alice_ws.sent.clear()

    await node_a.set_role(ROOM, "ghost", "speaker", actor_id=host.peer_id)
    await node_a.remove(ROOM, "ghost", actor_id=host.peer_id)

    assert host_ws.sent == [] and alice_ws.sent == []
    assert room_requests_rejected_total.value("set-role", "not_found") == 0.0
    await node_a.stop()
    await node_b.stop()


@pytest.mark.anyio
async def test_publish_connection_error_logs_warning_and_keeps_local_delivery(caplog):
    transport = RedisTransport(BrokerConfig(redis_url="redis://example"))
    transport._redis = FailingRedis()  # type: ignore[assignment]
    manager = RoomSignalManager(transport, node_id="node")
    _, host_ws, _ = await _join(manager, ParticipantRole.HOST, "queen-1")

    with caplog.at_level(logging.WARNING):
        alice, _, _ = await _join(manager, ParticipantRole.LISTENER, "alice")

    assert host_ws.sent[-1] == {"type": "peer-joined", "peer": alice.to_public()}
    assert any(
        record.levelno == logging.WARNING and "room update" in record.getMessage() for record in caplog.records
    ), "Publish failure should be logged as a warning"
    assert realtime_publish_errors_total.value("rooms", "redis", "unavailable") >= 1.0
    await transport.stop()


def test_participant_metadata_roundtrip_defaults():
    metadata = ParticipantMetadata.from_payload({"displayName": "Joy", "isSharing": True})

    assert metadata.to_payload() == {
        "displayName": "Joy",
        "avatarUrl": "",
        "isHandRaised": False,
        "isSharing": True,
    }
    assert ParticipantMetadata.from_payload(None) == ParticipantMetadata()
