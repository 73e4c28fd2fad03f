"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.security import RoomTokenClaims, require_room_token
from app.models import LiveRoom
from app.services import ConferencingClient
from lounge.realtime import RoomSignalManager

bearer_scheme = HTTPBearer(auto_error=False)


def get_conferencing(request: Request) -> ConferencingClient:
    return request.app.state.conferencing


def get_signal_manager(request: Request) -> RoomSignalManager:
    return request.app.state.realtime.signals


def get_room_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> RoomTokenClaims:
    """Resolve the room token sent as ``Authorization: Bearer``."""

    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing room token")
    return require_room_token(credentials.credentials)


def find_live_room(room_id: str, db: Session) -> LiveRoom | None:
    stmt = select(LiveRoom).where(LiveRoom.room_id == room_id)
    return db.execute(stmt).scalar_one_or_none()


def get_live_room_or_404(room_id: str, db: Session) -> LiveRoom:
    room = find_live_room(room_id, db)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return room
