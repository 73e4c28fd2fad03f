"""Room transport backed by the service's ``/ws/rooms/{room_id}`` socket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Mapping
from urllib.parse import quote

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from lounge import protocol
from lounge.room.capability import (
    BROADCAST,
    DataReceived,
    MetadataUpdated,
    MuteRequested,
    PeerJoined,
    PeerLeft,
    RoleChanged,
    RoomJoined,
    RoomLeft,
    Targets,
    TransportEvent,
    TransportListener,
)
from lounge.room.errors import JoinError, TransportError
from lounge.room.models import ParticipantMetadata, ParticipantRole

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


def _default_connector(url: str) -> Awaitable[Any]:
    return websockets.connect(url, ping_interval=None, max_size=2**20)


class WebSocketRoomTransport:
    """Translate room socket frames into transport events and back."""

    def __init__(
        self,
        base_url: str,
        *,
        connect: Connector | None = None,
        join_timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._connect = connect or _default_connector
        self._join_timeout = join_timeout
        self._listeners: list[TransportListener] = []
        self._ws: Any | None = None
        self._reader: asyncio.Task[None] | None = None
        self._room_id: str | None = None
        self._local_peer_id: str | None = None
        self._roles: dict[str, ParticipantRole] = {}
        self._leaving = False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------
    def add_listener(self, listener: TransportListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: TransportEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Transport listener failed for %s", type(event).__name__)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._ws is not None

    def room_url(self, room_id: str, token: str) -> str:
        return f"{self.base_url}/ws/rooms/{quote(room_id, safe='')}?token={quote(token, safe='')}"

    async def join_room(self, room_id: str, token: str) -> RoomJoined:
        if self._ws is not None:
            raise JoinError(f"Already connected to room {self._room_id}")
        try:
            ws = await self._connect(self.room_url(room_id, token))
        except (OSError, WebSocketException) as exc:
            raise JoinError(f"Unable to connect to room {room_id}: {exc}") from exc

        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self._join_timeout)
            frame = json.loads(raw)
        except asyncio.TimeoutError as exc:
            await self._close_quietly(ws)
            raise JoinError(f"Timed out waiting for room {room_id} welcome") from exc
        except (ConnectionClosed, ValueError) as exc:
            await self._close_quietly(ws)
            raise JoinError(f"Room {room_id} refused the connection: {exc}") from exc

        if not isinstance(frame, dict) or frame.get("type") != protocol.WELCOME:
            await self._close_quietly(ws)
            detail = frame.get("detail") if isinstance(frame, dict) else None
            raise JoinError(detail or f"Unexpected handshake frame from room {room_id}")

        joined = RoomJoined(
            room_id=str(frame.get("roomId") or room_id),
            local_peer_id=str(frame["peerId"]),
            role=ParticipantRole.parse(frame.get("role")),
            metadata=ParticipantMetadata.from_payload(frame.get("metadata")),
        )
        self._ws = ws
        self._room_id = joined.room_id
        self._local_peer_id = joined.local_peer_id
        self._roles.clear()
        self._leaving = False
        self._emit(joined)
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(ws), name=f"room-reader-{joined.room_id}"
        )
        return joined

    async def leave_room(self) -> None:
        ws = self._ws
        if ws is None:
            return
        self._leaving = True
        reader = self._reader
        self._reader = None
        try:
            await self._close_quietly(ws)
        finally:
            if reader is not None:
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            self._reset()
            self._emit(RoomLeft(reason="left"))

    async def _read_loop(self, ws: Any) -> None:
        reason = "disconnected"
        details: dict[str, Any] = {}
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.debug("Ignoring non-JSON room frame")
                    continue
                if not isinstance(frame, dict):
                    continue
                if frame.get("type") == protocol.REMOVED:
                    reason = str(frame.get("reason") or protocol.REASON_KICKED)
                    details = {"detail": frame.get("detail")}
                    break
                await self._handle_frame(frame)
        except ConnectionClosed as exc:
            details = {"code": exc.rcvd.code if exc.rcvd is not None else None}
        finally:
            if not self._leaving and self._ws is ws:
                logger.info("Room %s connection ended: %s", self._room_id, reason)
                self._reset()
                await self._close_quietly(ws)
                self._emit(RoomLeft(reason=reason, details=details))

    async def _handle_frame(self, frame: Mapping[str, Any]) -> None:
        frame_type = frame.get("type")
        match frame_type:
            case protocol.PEERS:
                for entry in frame.get("peers") or []:
                    self._peer_event(entry, joined=True)
            case protocol.PEER_JOINED:
                self._peer_event(frame.get("peer") or {}, joined=True)
            case protocol.PEER_UPDATED:
                self._peer_event(frame.get("peer") or {}, joined=False)
            case protocol.PEER_LEFT:
                peer_id = frame.get("peerId")
                if peer_id:
                    self._roles.pop(str(peer_id), None)
                    self._emit(PeerLeft(peer_id=str(peer_id)))
            case protocol.DATA:
                sender = frame.get("from")
                label = frame.get("label")
                if sender and isinstance(label, str):
                    self._emit(DataReceived(sender_id=str(sender), label=label, payload=frame.get("payload")))
            case protocol.MUTE:
                self._emit(MuteRequested(requested_by=frame.get("by")))
            case protocol.PING:
                await self._send({"type": protocol.PONG})
            case protocol.PONG:
                return
            case protocol.ERROR:
                logger.warning(
                    "Room %s rejected a request: %s",
                    self._room_id,
                    frame.get("detail") or frame.get("code"),
                )
            case _:
                logger.debug("Ignoring unknown room frame type %r", frame_type)

    def _peer_event(self, entry: Mapping[str, Any], *, joined: bool) -> None:
        peer_id = entry.get("peerId")
        if not peer_id:
            return
        peer_id = str(peer_id)
        role = ParticipantRole.parse(entry.get("role"))
        raw_metadata = entry.get("metadata")
        metadata = ParticipantMetadata.from_payload(raw_metadata) if raw_metadata is not None else None

        if peer_id == self._local_peer_id:
            if metadata is not None:
                self._emit(MetadataUpdated(peer_id=peer_id, metadata=metadata))
            self._emit(RoleChanged(peer_id=peer_id, role=role))
            return

        if joined:
            self._roles[peer_id] = role
            self._emit(PeerJoined(peer_id=peer_id, role=role, metadata=metadata))
            return
        previous = self._roles.get(peer_id)
        self._roles[peer_id] = role
        if metadata is not None:
            self._emit(MetadataUpdated(peer_id=peer_id, metadata=metadata))
        if previous is not role:
            self._emit(RoleChanged(peer_id=peer_id, role=role))

    # ------------------------------------------------------------------
    # Outbound requests
    # ------------------------------------------------------------------
    async def update_metadata(self, metadata: ParticipantMetadata) -> None:
        await self._send({"type": protocol.METADATA, "metadata": metadata.to_payload()})

    async def send_data(self, to: Targets, payload: str, label: str) -> None:
        target: str | list[str] = BROADCAST if to == BROADCAST else ([to] if isinstance(to, str) else list(to))
        await self._send({"type": protocol.DATA, "to": target, "label": label, "payload": payload})

    async def mute_everyone(self) -> None:
        await self._send({"type": protocol.CONTROL, "action": protocol.MUTE_EVERYONE})

    async def update_role(self, peer_id: str, role: ParticipantRole) -> None:
        await self._send(
            {"type": protocol.CONTROL, "action": protocol.SET_ROLE, "peerId": peer_id, "role": role.value}
        )

    async def kick_peer(self, peer_id: str) -> None:
        await self._send({"type": protocol.CONTROL, "action": protocol.REMOVE, "peerId": peer_id})

    async def ping(self) -> None:
        await self._send({"type": protocol.PING})

    async def _send(self, frame: Mapping[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("Not connected to a room")
        try:
            await ws.send(json.dumps(frame))
        except (ConnectionClosed, OSError) as exc:
            raise TransportError(f"Room connection lost: {exc}") from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _reset(self) -> None:
        self._ws = None
        self._room_id = None
        self._local_peer_id = None
        self._roles.clear()

    @staticmethod
    async def _close_quietly(ws: Any) -> None:
        try:
            await ws.close()
        except (ConnectionClosed, OSError):
            logger.debug("Room socket already closed")


__all__ = ["WebSocketRoomTransport"]
