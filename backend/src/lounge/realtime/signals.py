"""Server-side room membership, metadata and data relay with cross-node fan-out."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import (
    realtime_connections,
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
    room_requests_rejected_total,
    rooms_live,
)
from lounge import protocol
from lounge.room.capability import BROADCAST
from lounge.room.messages import MessageFormatError, SpeakerRequest, Whisper, parse_message
from lounge.room.models import ParticipantMetadata, ParticipantRole

from .transport import ROOM_TOPIC, RedisTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

CLOSE_REMOVED = 4001
CLOSE_ROOM_ENDED = 4002

# Bus envelope kinds. Frames are relayed as-is; the others are handled by
# whichever node holds the peers involved.
ENVELOPE_FRAME = "frame"
ENVELOPE_ROSTER_REQUEST = "roster-request"
ENVELOPE_CONTROL = "control"


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON through *websocket*; returns ``False`` once the peer is gone."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


async def _close_quietly(websocket: WebSocket, code: int) -> None:
    if websocket.application_state != WebSocketState.CONNECTED:
        return
    try:
        await websocket.close(code=code)
    except RuntimeError:
        logger.debug("Websocket already closed")


@dataclass
class ParticipantState:
    websocket: WebSocket
    peer_id: str
    user_id: str
    role: ParticipantRole
    metadata: ParticipantMetadata = field(default_factory=ParticipantMetadata)
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def to_public(self) -> dict[str, Any]:
        return {
            "peerId": self.peer_id,
            "role": self.role.value,
            "metadata": self.metadata.to_payload(),
        }

    async def send(self, payload: dict[str, Any]) -> bool:
        async with self.send_lock:
            return await safe_send_json(self.websocket, payload)


class RoomSignalManager:
    """Track participants per room and relay their frames.

    Host-only controls are checked against the participant's token role.
    Results follow ``(value, changed, error)`` where ``error`` is a message
    suitable for an ``error`` frame.
    """

    def __init__(
        self,
        transport: RedisTransport | None,
        *,
        node_id: str,
        max_speakers: int = 16,
    ) -> None:
        self._transport = transport
        self._node_id = node_id
        self._max_speakers = max_speakers
        self._rooms: dict[str, dict[str, ParticipantState]] = {}
        self._lock = asyncio.Lock()
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False
        self._subscribe_warning_logged = False

    @property
    def node_id(self) -> str:
        return self._node_id

    # ------------------------------------------------------------------
    # Broker wiring
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._transport is None or not self._transport.connected:
            return
        try:
            self._subscription = await self._transport.subscribe(ROOM_TOPIC, self._handle_remote)
        except TransportUnavailableError:
            if not self._subscribe_warning_logged:
                logger.warning(
                    "Realtime backend unavailable; room fan-out will be local only",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._subscribe_warning_logged = True
            self._subscription = None
            return
        realtime_subscriptions.labels("rooms", "redis").inc()
        self._subscribe_warning_logged = False

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            realtime_subscriptions.labels("rooms", "redis").dec()
            self._subscription = None

    @property
    def _bus_connected(self) -> bool:
        return self._transport is not None and self._transport.connected

    async def _handle_remote(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self._node_id:
            return
        room_id = message.get("room")
        if not isinstance(room_id, str):
            return
        kind = message.get("kind", ENVELOPE_FRAME)
        if kind == ENVELOPE_ROSTER_REQUEST:
            realtime_events_total.labels("rooms", "in", kind).inc()
            await self._answer_roster_request(room_id, message.get("peer"))
            return
        if kind == ENVELOPE_CONTROL:
            realtime_events_total.labels("rooms", "in", kind).inc()
            await self._apply_remote_control(room_id, message)
            return
        payload = message.get("payload")
        if not isinstance(payload, dict):
            return
        realtime_events_total.labels("rooms", "in", payload.get("type", "message")).inc()
        if payload.get("type") == protocol.REMOVED and payload.get("reason") == protocol.REASON_ROOM_ENDED:
            await self._close_room_locally(room_id, payload)
            return
        targets = message.get("to")
        exclude = message.get("exclude") or ()
        if isinstance(targets, list):
            await self._deliver(room_id, payload, only=targets)
        else:
            await self._deliver(room_id, payload, exclude=exclude)

    async def _publish(
        self,
        room_id: str,
        payload: dict[str, Any],
        *,
        to: Sequence[str] | None = None,
        exclude: Iterable[str] = (),
    ) -> None:
        envelope: dict[str, Any] = {
            "room": room_id,
            "payload": payload,
            "to": list(to) if to is not None else None,
            "exclude": list(exclude),
        }
        await self._send_envelope(envelope, payload.get("type", "message"))

    async def _send_envelope(self, envelope: dict[str, Any], event_type: str) -> None:
        if not self._bus_connected:
            return
        envelope["origin"] = self._node_id
        try:
            await self._transport.publish(ROOM_TOPIC, envelope)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while broadcasting %s room update; operating in local-only mode",
                    event_type,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels("rooms", "redis", "unavailable").inc()
        except Exception:
            realtime_publish_errors_total.labels("rooms", "redis", "error").inc()
            logger.exception("Unexpected error while broadcasting %s room update", event_type)
        else:
            self._publish_warning_logged = False
            realtime_events_total.labels("rooms", "out", event_type).inc()

    async def _request_roster(self, room_id: str, peer_id: str) -> None:
        await self._send_envelope(
            {"room": room_id, "kind": ENVELOPE_ROSTER_REQUEST, "peer": peer_id},
            ENVELOPE_ROSTER_REQUEST,
        )

    async def _answer_roster_request(self, room_id: str, peer_id: Any) -> None:
        if not isinstance(peer_id, str):
            return
        snapshot = await self.snapshot(room_id)
        if snapshot:
            await self._publish(room_id, {"type": protocol.PEERS, "peers": snapshot}, to=[peer_id])

    async def _forward_control(self, room_id: str, action: str, target_id: str, actor_id: str, **extra: Any) -> None:
        logger.info("Forwarding %s for %s in room %s to other nodes", action, target_id, room_id)
        await self._send_envelope(
            {
                "room": room_id,
                "kind": ENVELOPE_CONTROL,
                "action": action,
                "target": target_id,
                "actor": actor_id,
                **extra,
            },
            action,
        )

    async def _apply_remote_control(self, room_id: str, message: dict[str, Any]) -> None:
        target_id = message.get("target")
        actor_id = message.get("actor")
        if not isinstance(target_id, str) or not isinstance(actor_id, str):
            return
        # Every node receives the request; only the one holding the target acts.
        if await self.get_participant(room_id, target_id) is None:
            return
        action = message.get("action")
        if action == "set-role":
            role = ParticipantRole.parse(message.get("role"))
            if role is not ParticipantRole.HOST:
                await self._apply_role(room_id, target_id, role, actor_id=actor_id)
        elif action == "remove":
            await self._apply_remove(room_id, target_id, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    async def register(
        self,
        room_id: str,
        websocket: WebSocket,
        *,
        user_id: str,
        role: ParticipantRole,
        metadata: ParticipantMetadata | None = None,
    ) -> tuple[ParticipantState, list[dict[str, Any]]]:
        """Add a connection to *room_id*; returns it with a snapshot of the others.

        The ``welcome`` and ``peers`` frames are sent here. Frames for the new
        peer produced by concurrent joins or relays queue behind them. The
        snapshot covers this node; other nodes answer a roster request with
        their own ``peers`` frame.
        """

        async with self._lock:
            participants = self._rooms.setdefault(room_id, {})
            if role is ParticipantRole.SPEAKER and self._count_speakers_locked(participants) >= self._max_speakers:
                role = ParticipantRole.LISTENER
            participant = ParticipantState(
                websocket=websocket,
                peer_id=uuid.uuid4().hex,
                user_id=user_id,
                role=role,
                metadata=metadata or ParticipantMetadata(),
            )
            await participant.send_lock.acquire()
            snapshot = [other.to_public() for other in participants.values()]
            participants[participant.peer_id] = participant
            rooms_live.set(len(self._rooms))
        try:
            await safe_send_json(
                websocket,
                {
                    "type": protocol.WELCOME,
                    "roomId": room_id,
                    "peerId": participant.peer_id,
                    "role": participant.role.value,
                    "metadata": participant.metadata.to_payload(),
                },
            )
            await safe_send_json(websocket, {"type": protocol.PEERS, "peers": snapshot})
        finally:
            participant.send_lock.release()
        realtime_connections.labels("rooms").inc()
        logger.info("Peer %s (%s) joined room %s as %s", participant.peer_id, user_id, room_id, role.value)
        await self.broadcast(
            room_id,
            {"type": protocol.PEER_JOINED, "peer": participant.to_public()},
            exclude=[participant.peer_id],
            publish=True,
        )
        await self._request_roster(room_id, participant.peer_id)
        return participant, snapshot

    async def unregister(self, room_id: str, peer_id: str) -> ParticipantState | None:
        participant = await self._pop(room_id, peer_id)
        if participant is None:
            return None
        await self.broadcast(room_id, {"type": protocol.PEER_LEFT, "peerId": peer_id}, publish=True)
        return participant

    async def _pop(self, room_id: str, peer_id: str) -> ParticipantState | None:
        async with self._lock:
            participants = self._rooms.get(room_id)
            if not participants or peer_id not in participants:
                return None
            participant = participants.pop(peer_id)
            if not participants:
                self._rooms.pop(room_id, None)
            rooms_live.set(len(self._rooms))
        realtime_connections.labels("rooms").dec()
        logger.info("Peer %s left room %s", peer_id, room_id)
        return participant

    async def snapshot(self, room_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return [participant.to_public() for participant in self._rooms.get(room_id, {}).values()]

    async def get_participant(self, room_id: str, peer_id: str) -> ParticipantState | None:
        async with self._lock:
            return self._rooms.get(room_id, {}).get(peer_id)

    async def participant_count(self, room_id: str) -> int:
        async with self._lock:
            return len(self._rooms.get(room_id, {}))

    async def rooms_overview(self) -> dict[str, dict[str, Any]]:
        async with self._lock:
            return {
                room_id: {
                    "participants": len(participants),
                    "speakers": self._count_speakers_locked(participants),
                }
                for room_id, participants in self._rooms.items()
            }

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def broadcast(
        self,
        room_id: str,
        payload: dict[str, Any],
        *,
        exclude: Iterable[str] = (),
        publish: bool = False,
    ) -> None:
        exclude = list(exclude)
        await self._deliver(room_id, payload, exclude=exclude)
        if publish:
            await self._publish(room_id, payload, exclude=exclude)

    async def send_to(
        self,
        room_id: str,
        peer_ids: Sequence[str],
        payload: dict[str, Any],
        *,
        publish: bool = False,
    ) -> None:
        delivered = await self._deliver(room_id, payload, only=peer_ids)
        remaining = [peer_id for peer_id in peer_ids if peer_id not in delivered]
        if publish and remaining:
            await self._publish(room_id, payload, to=remaining)

    async def _deliver(
        self,
        room_id: str,
        payload: dict[str, Any],
        *,
        only: Sequence[str] | None = None,
        exclude: Iterable[str] = (),
    ) -> set[str]:
        skip = set(exclude)
        async with self._lock:
            participants = self._rooms.get(room_id, {})
            if only is not None:
                targets = [participants[peer_id] for peer_id in only if peer_id in participants]
            else:
                targets = [state for state in participants.values() if state.peer_id not in skip]
        delivered: set[str] = set()
        for state in targets:
            if await state.send(payload):
                delivered.add(state.peer_id)
        return delivered

    # ------------------------------------------------------------------
    # Client requests
    # ------------------------------------------------------------------
    async def update_metadata(
        self, room_id: str, peer_id: str, raw: Any
    ) -> tuple[dict[str, Any] | None, bool, str | None]:
        if not isinstance(raw, dict):
            return self._reject("metadata", "invalid", "Metadata must be an object")
        metadata = ParticipantMetadata.from_payload(raw)
        async with self._lock:
            participant = self._rooms.get(room_id, {}).get(peer_id)
            if participant is None:
                return self._reject("metadata", "not_found", "Participant not found")
            if participant.metadata == metadata:
                return participant.to_public(), False, None
            participant.metadata = metadata
            public = participant.to_public()
        await self.broadcast(room_id, {"type": protocol.PEER_UPDATED, "peer": public}, publish=True)
        return public, True, None

    async def relay_data(
        self,
        room_id: str,
        sender_id: str,
        *,
        to: Any,
        label: Any,
        payload: Any,
    ) -> str | None:
        """Validate and forward a data message; returns an error message on rejection."""

        if not isinstance(label, str):
            return self._reject("data", "invalid", "Data messages need a label")[2]
        try:
            message = parse_message(label, payload)
        except MessageFormatError as exc:
            return self._reject("data", "invalid", str(exc))[2]

        sender = await self.get_participant(room_id, sender_id)
        if sender is None:
            return self._reject("data", "not_found", "Participant not found")[2]
        match message:
            case SpeakerRequest(requester_id=requester) if requester != sender_id:
                return self._reject("data", "forbidden", "Speaker requests must name the sender")[2]
            case Whisper() if sender.role is not ParticipantRole.HOST:
                return self._reject("data", "forbidden", "Only the host may whisper")[2]
            case _:
                pass

        frame = {"type": protocol.DATA, "from": sender_id, "label": message.label, "payload": message.payload}
        if to == BROADCAST:
            await self.broadcast(room_id, frame, exclude=[sender_id], publish=True)
            return None
        if isinstance(to, str):
            to = [to]
        if not isinstance(to, list) or not all(isinstance(item, str) for item in to):
            return self._reject("data", "invalid", "Data targets must be '*' or a list of peer ids")[2]
        targets = [peer_id for peer_id in dict.fromkeys(to) if peer_id and peer_id != sender_id]
        if targets:
            await self.send_to(room_id, targets, frame, publish=True)
        return None

    async def set_role(
        self,
        room_id: str,
        target_id: str,
        new_role: Any,
        *,
        actor_id: str,
    ) -> tuple[dict[str, Any] | None, bool, str | None]:
        role = ParticipantRole.parse(new_role) if isinstance(new_role, str) else None
        if role not in (ParticipantRole.SPEAKER, ParticipantRole.LISTENER):
            return self._reject("set-role", "invalid", "Unsupported role")

        async with self._lock:
            participants = self._rooms.get(room_id, {})
            actor = participants.get(actor_id)
            if actor is None or actor.role is not ParticipantRole.HOST:
                return self._reject("set-role", "forbidden", "Only the host may change roles")
            forward = target_id not in participants and self._bus_connected
        if forward:
            await self._forward_control(room_id, "set-role", target_id, actor_id, role=role.value)
            return None, False, None
        return await self._apply_role(room_id, target_id, role, actor_id=actor_id)

    async def _apply_role(
        self, room_id: str, target_id: str, role: ParticipantRole, *, actor_id: str
    ) -> tuple[dict[str, Any] | None, bool, str | None]:
        async with self._lock:
            participants = self._rooms.get(room_id, {})
            target = participants.get(target_id)
            if target is None:
                return self._reject("set-role", "not_found", "Participant not found")
            if target.role is ParticipantRole.HOST:
                return self._reject("set-role", "forbidden", "The host role cannot be changed")
            if target.role is role:
                return target.to_public(), False, None
            if role is ParticipantRole.SPEAKER and self._count_speakers_locked(participants) >= self._max_speakers:
                return self._reject("set-role", "limit", "Speaker limit reached")
            target.role = role
            if role is ParticipantRole.SPEAKER and target.metadata.is_hand_raised:
                target.metadata = target.metadata.with_hand(False)
            public = target.to_public()
        logger.info("Host %s set %s to %s in room %s", actor_id, target_id, role.value, room_id)
        await self.broadcast(room_id, {"type": protocol.PEER_UPDATED, "peer": public}, publish=True)
        return public, True, None

    async def remove(
        self, room_id: str, target_id: str, *, actor_id: str
    ) -> tuple[dict[str, Any] | None, bool, str | None]:
        async with self._lock:
            participants = self._rooms.get(room_id, {})
            actor = participants.get(actor_id)
            if actor is None or actor.role is not ParticipantRole.HOST:
                return self._reject("remove", "forbidden", "Only the host may remove participants")
            if target_id == actor_id:
                return self._reject("remove", "invalid", "The host cannot remove themselves")
            if target_id not in participants:
                if not self._bus_connected:
                    return self._reject("remove", "not_found", "Participant not found")
                forward = True
            else:
                forward = False
        if forward:
            await self._forward_control(room_id, "remove", target_id, actor_id)
            return None, False, None
        return await self._apply_remove(room_id, target_id, actor_id=actor_id)

    async def _apply_remove(
        self, room_id: str, target_id: str, *, actor_id: str
    ) -> tuple[dict[str, Any] | None, bool, str | None]:
        target = await self._pop(room_id, target_id)
        if target is None:
            return None, False, None
        await target.send({"type": protocol.REMOVED, "reason": protocol.REASON_KICKED, "by": actor_id})
        await _close_quietly(target.websocket, CLOSE_REMOVED)
        await self.broadcast(room_id, {"type": protocol.PEER_LEFT, "peerId": target_id}, publish=True)
        return target.to_public(), True, None

    async def mute_everyone(self, room_id: str, *, actor_id: str) -> str | None:
        actor = await self.get_participant(room_id, actor_id)
        if actor is None or actor.role is not ParticipantRole.HOST:
            return self._reject("mute-everyone", "forbidden", "Only the host may mute everyone")[2]
        await self.broadcast(room_id, {"type": protocol.MUTE, "by": actor_id}, exclude=[actor_id], publish=True)
        return None

    async def end_room(self, room_id: str) -> int:
        """Disconnect every participant of *room_id* on all nodes."""

        payload = {"type": protocol.REMOVED, "reason": protocol.REASON_ROOM_ENDED}
        closed = await self._close_room_locally(room_id, payload)
        await self._publish(room_id, payload)
        return closed

    async def _close_room_locally(self, room_id: str, payload: dict[str, Any]) -> int:
        async with self._lock:
            participants = self._rooms.pop(room_id, {})
            rooms_live.set(len(self._rooms))
        for participant in participants.values():
            await participant.send(payload)
            await _close_quietly(participant.websocket, CLOSE_ROOM_ENDED)
            realtime_connections.labels("rooms").dec()
        if participants:
            logger.info("Closed %s connections for ended room %s", len(participants), room_id)
        return len(participants)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _count_speakers_locked(participants: dict[str, ParticipantState]) -> int:
        return sum(1 for participant in participants.values() if participant.role is ParticipantRole.SPEAKER)

    @staticmethod
    def _reject(action: str, reason: str, message: str) -> tuple[None, bool, str]:
        room_requests_rejected_total.labels(action, reason).inc()
        logger.debug("Rejected %s request: %s", action, message)
        return None, False, message


__all__ = [
    "CLOSE_REMOVED",
    "CLOSE_ROOM_ENDED",
    "ParticipantState",
    "RoomSignalManager",
    "safe_send_json",
]
