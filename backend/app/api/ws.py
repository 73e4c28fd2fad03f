"""WebSocket endpoint carrying live room membership, metadata and data messages."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.api.deps import find_live_room
from app.config import get_settings
from app.core.security import RoomTokenError, decode_room_token
from app.database import get_db_session
from app.monitoring.metrics import realtime_events_total
from lounge import protocol
from lounge.realtime import ParticipantState, RoomSignalManager, safe_send_json

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": protocol.PING}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            idle_long_enough = interval <= 0 or now - last_activity >= interval
            ping_due = last_ping_sent is None or interval <= 0 or now - last_ping_sent >= interval
            if idle_long_enough and ping_due:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _send_error(websocket: WebSocket, detail: str, *, code: str = "bad_request") -> None:
    await safe_send_json(websocket, {"type": protocol.ERROR, "code": code, "detail": detail})


def _signal_manager(websocket: WebSocket) -> RoomSignalManager:
    return websocket.app.state.realtime.signals


@router.websocket("/rooms/{room_id}")
async def websocket_room(websocket: WebSocket, room_id: str) -> None:
    """Join *room_id* with the role carried by the ``token`` query parameter."""

    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return

    try:
        claims = decode_room_token(token, room_id=room_id)
    except RoomTokenError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return

    with get_db_session() as db:
        room = find_live_room(room_id, db)
        if room is None:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Room not found")
            return
        if not room.is_live:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Room has ended")
            return

    signals = _signal_manager(websocket)
    await websocket.accept()
    participant, _ = await signals.register(room_id, websocket, user_id=claims.user_id, role=claims.role)

    try:
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid message format")
                continue
            if not isinstance(payload, dict):
                await _send_error(websocket, "Message payload must be a JSON object")
                continue
            message_type = payload.get("type")
            if not isinstance(message_type, str) or not message_type:
                await _send_error(websocket, "Message type must be provided")
                continue

            realtime_events_total.labels("rooms", "client", message_type).inc()
            await _dispatch(signals, room_id, participant, websocket, message_type, payload)
    finally:
        await signals.unregister(room_id, participant.peer_id)


async def _dispatch(
    signals: RoomSignalManager,
    room_id: str,
    participant: ParticipantState,
    websocket: WebSocket,
    message_type: str,
    payload: dict[str, Any],
) -> None:
    peer_id = participant.peer_id
    match message_type:
        case protocol.PING:
            await safe_send_json(websocket, {"type": protocol.PONG})
        case protocol.PONG:
            return
        case protocol.METADATA:
            _, _, error = await signals.update_metadata(room_id, peer_id, payload.get("metadata"))
            if error is not None:
                await _send_error(websocket, error)
        case protocol.DATA:
            error = await signals.relay_data(
                room_id,
                peer_id,
                to=payload.get("to", "*"),
                label=payload.get("label"),
                payload=payload.get("payload"),
            )
            if error is not None:
                await _send_error(websocket, error)
        case protocol.CONTROL:
            await _dispatch_control(signals, room_id, peer_id, websocket, payload)
        case _:
            await _send_error(websocket, "Unsupported payload type")


async def _dispatch_control(
    signals: RoomSignalManager,
    room_id: str,
    peer_id: str,
    websocket: WebSocket,
    payload: dict[str, Any],
) -> None:
    action = payload.get("action")
    target = payload.get("peerId")
    error: str | None
    if action == protocol.MUTE_EVERYONE:
        error = await signals.mute_everyone(room_id, actor_id=peer_id)
    elif action in (protocol.SET_ROLE, protocol.REMOVE):
        if not isinstance(target, str) or not target:
            await _send_error(websocket, "peerId must be provided")
            return
        if action == protocol.SET_ROLE:
            _, _, error = await signals.set_role(room_id, target, payload.get("role"), actor_id=peer_id)
        else:
            _, _, error = await signals.remove(room_id, target, actor_id=peer_id)
    else:
        await _send_error(websocket, "Unsupported control action")
        return
    if error is not None:
        code = "forbidden" if error.startswith("Only the host") else "rejected"
        await _send_error(websocket, error, code=code)
