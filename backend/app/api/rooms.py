"""Live room creation, listing and shutdown."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.deps import get_conferencing, get_live_room_or_404, get_room_claims, get_signal_manager
from app.config import get_settings
from app.core.security import RoomTokenClaims, generate_host_key, hash_host_key
from app.core.tags import generate_tags
from app.database import get_db
from app.models import LiveRoom
from app.monitoring.metrics import rooms_created_total
from app.schemas import (
    CreateRoomData,
    CreateRoomRequest,
    CreateRoomResponse,
    EndRoomResponse,
    LiveRoomRead,
)
from app.services import ConferencingClient, ConferencingError
from lounge.realtime import RoomSignalManager
from lounge.room.models import ParticipantRole

router = APIRouter(tags=["rooms"])

settings = get_settings()

logger = logging.getLogger(__name__)


async def _serialize(room: LiveRoom, signals: RoomSignalManager) -> LiveRoomRead:
    payload = LiveRoomRead.model_validate(room)
    return payload.model_copy(update={"participants": await signals.participant_count(room.room_id)})


@router.post("/create-room", response_model=CreateRoomResponse, status_code=status.HTTP_200_OK)
async def create_room(
    payload: CreateRoomRequest,
    db: Session = Depends(get_db),
    conferencing: ConferencingClient = Depends(get_conferencing),
) -> CreateRoomResponse:
    """Book a room with the provider and record it as live."""

    title = payload.title or settings.default_room_title
    try:
        room_id = await conferencing.create_room(title)
    except ConferencingError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to create room") from exc

    host_key = generate_host_key()
    room = LiveRoom(
        room_id=room_id,
        title=title,
        host_id=payload.host_id,
        host_key_hash=hash_host_key(host_key),
        is_live=True,
        tags=generate_tags(title, ParticipantRole.HOST.value),
    )
    db.add(room)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Room already exists") from exc

    rooms_created_total.labels(conferencing.provider).inc()
    logger.info("Created room %s (%s) for host %s", room_id, title, payload.host_id)
    return CreateRoomResponse(data=CreateRoomData(room_id=room_id, host_key=host_key))


@router.get("/rooms", response_model=list[LiveRoomRead])
async def list_rooms(
    include_ended: bool = False,
    db: Session = Depends(get_db),
    signals: RoomSignalManager = Depends(get_signal_manager),
) -> list[LiveRoomRead]:
    """Return live rooms, newest first."""

    stmt = select(LiveRoom).order_by(LiveRoom.created_at.desc(), LiveRoom.id.desc())
    if not include_ended:
        stmt = stmt.where(LiveRoom.is_live.is_(True))
    rooms = db.execute(stmt).scalars().all()
    return [await _serialize(room, signals) for room in rooms]


@router.get("/rooms/{room_id}", response_model=LiveRoomRead)
async def read_room(
    room_id: str,
    db: Session = Depends(get_db),
    signals: RoomSignalManager = Depends(get_signal_manager),
) -> LiveRoomRead:
    room = get_live_room_or_404(room_id, db)
    return await _serialize(room, signals)


@router.post("/rooms/{room_id}/end", response_model=EndRoomResponse)
async def end_room(
    room_id: str,
    claims: RoomTokenClaims = Depends(get_room_claims),
    db: Session = Depends(get_db),
    signals: RoomSignalManager = Depends(get_signal_manager),
) -> EndRoomResponse:
    """Mark the room as ended and disconnect everyone in it."""

    if claims.room_id != room_id or claims.role is not ParticipantRole.HOST:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the host may end the room")

    room = get_live_room_or_404(room_id, db)
    if room.is_live:
        room.is_live = False
        room.ended_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(room)
        logger.info("Room %s ended by %s", room_id, claims.user_id)

    disconnected = await signals.end_room(room_id)
    return EndRoomResponse(room=LiveRoomRead.model_validate(room), disconnected=disconnected)
