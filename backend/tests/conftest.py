"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
for path in (ROOT_DIR, ROOT_DIR / "src"):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from app import database
from app.core.security import create_room_token, hash_host_key
from app.database import get_db
from app.main import app
from app.models import Base, LiveRoom
from lounge.room.capability import RoomJoined, RoomLeft
from lounge.room.errors import JoinError, TransportError
from lounge.room.models import ParticipantRole


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory, monkeypatch) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    # Websocket handlers open their own sessions through SessionLocal.
    monkeypatch.setattr(database, "SessionLocal", session_factory)
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


HOST_KEY = "morning-prayer-host-key"


@pytest.fixture()
def host_key() -> str:
    return HOST_KEY


@pytest.fixture()
def live_room(db_session) -> LiveRoom:
    room = LiveRoom(
        room_id="abc-defg-hij",
        title="Morning Prayer",
        host_id="queen-1",
        host_key_hash=hash_host_key(HOST_KEY),
        is_live=True,
        tags=["prayer"],
    )
    db_session.add(room)
    db_session.commit()
    db_session.refresh(room)
    return room


@pytest.fixture()
def issue_token():
    """Return a helper that signs a room token without going through the API."""

    def issue(room_id: str, user_id: str, role: ParticipantRole = ParticipantRole.LISTENER) -> str:
        return create_room_token(user_id=user_id, role=role, room_id=room_id)

    return issue


class FakeRoomTransport:
    """In-memory room transport recording every outbound request."""

    def __init__(self, *, local_peer_id: str = "local-peer", role: ParticipantRole = ParticipantRole.HOST) -> None:
        self.local_peer_id = local_peer_id
        self.role = role
        self.listeners: list = []
        self.sent: list[tuple[object, str, str]] = []
        self.metadata_updates: list = []
        self.role_updates: list[tuple[str, ParticipantRole]] = []
        self.kicked: list[str] = []
        self.mute_requests = 0
        self.join_failures = 0
        self.join_calls: list[tuple[str, str]] = []
        self.left = 0
        self.fail_sends = False

    def add_listener(self, listener):
        self.listeners.append(listener)

        def remove() -> None:
            if listener in self.listeners:
                self.listeners.remove(listener)

        return remove

    def emit(self, event) -> None:
        for listener in list(self.listeners):
            listener(event)

    async def join_room(self, room_id: str, token: str) -> RoomJoined:
        self.join_calls.append((room_id, token))
        if self.join_failures:
            self.join_failures -= 1
            raise JoinError("room refused the connection")
        joined = RoomJoined(room_id=room_id, local_peer_id=self.local_peer_id, role=self.role)
        self.emit(joined)
        return joined

    async def leave_room(self) -> None:
        self.left += 1
        self.emit(RoomLeft(reason="left"))

    async def mute_everyone(self) -> None:
        self.mute_requests += 1

    async def update_metadata(self, metadata) -> None:
        self.metadata_updates.append(metadata)

    async def send_data(self, to, payload: str, label: str) -> None:
        if self.fail_sends:
            raise TransportError("data channel closed")
        self.sent.append((to, payload, label))

    async def update_role(self, peer_id: str, role: ParticipantRole) -> None:
        self.role_updates.append((peer_id, role))

    async def kick_peer(self, peer_id: str) -> None:
        self.kicked.append(peer_id)


@pytest.fixture()
def fake_transport() -> FakeRoomTransport:
    return FakeRoomTransport()
