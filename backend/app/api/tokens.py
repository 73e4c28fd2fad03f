"""Room join token issuance."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.api.deps import find_live_room
from app.config import get_settings
from app.core.security import create_room_token, verify_host_key
from app.database import get_db
from app.monitoring.metrics import room_tokens_issued_total
from app.schemas import TokenRequest, TokenResponse
from lounge.room.models import ParticipantRole

router = APIRouter(tags=["tokens"])

settings = get_settings()

logger = logging.getLogger(__name__)


@router.post("/generateHuddleToken", response_model=TokenResponse, response_model_by_alias=True)
def generate_room_token(payload: TokenRequest, db: Session = Depends(get_db)) -> TokenResponse:
    """Issue a join token for a live room.

    Host tokens require the host key handed out when the room was created.
    Speakers are promoted inside the room by the host, so speaker tokens are
    never issued.
    """

    room = find_live_room(payload.room_id, db)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    if not room.is_live:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Room has ended")

    role = ParticipantRole.parse(payload.role)
    if role is ParticipantRole.HOST and not verify_host_key(payload.host_key, room.host_key_hash):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the room host may join as host")
    if role is ParticipantRole.SPEAKER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Speakers are promoted by the host inside the room"
        )

    token = create_room_token(user_id=payload.user_id, role=role, room_id=room.room_id)
    room_tokens_issued_total.labels(role.value).inc()
    logger.debug("Issued %s token for %s in room %s", role.value, payload.user_id, room.room_id)
    return TokenResponse(token=token, role=role.value, expires_in=settings.room_token_expire_minutes * 60)
