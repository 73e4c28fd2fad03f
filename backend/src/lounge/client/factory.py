"""Composition root for a client-side live room."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from lounge.room.capability import RoomBackend, RoomTransport, TokenProvider
from lounge.room.grid import GridPresentation, MeterFactory, random_meter_factory
from lounge.room.local import LocalParticipantController
from lounge.room.models import ParticipantRole
from lounge.room.registry import PeerRegistry
from lounge.room.relay import MessageRelay
from lounge.room.session import DEFAULT_ROOM_TITLE, RetryPolicy, RoomSessionController, SessionState

from .config import ClientSettings, get_client_settings
from .http import HttpRoomBackend, HttpTokenProvider
from .websocket import Connector, WebSocketRoomTransport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LiveRoom:
    """All coordinator components for one room, wired to one transport."""

    transport: RoomTransport
    registry: PeerRegistry
    relay: MessageRelay
    local: LocalParticipantController
    grid: GridPresentation
    session: RoomSessionController
    http_client: httpx.AsyncClient | None = None
    default_title: str = DEFAULT_ROOM_TITLE

    async def start(self, title: str | None = None) -> SessionState:
        """Create a room, join it as host, then announce the profile and mount the grid."""

        state = await self.session.start(title or self.default_title)
        await self._joined(state)
        return state

    async def join(
        self,
        room_id: str,
        *,
        role: ParticipantRole = ParticipantRole.LISTENER,
        host_key: str | None = None,
    ) -> SessionState:
        state = await self.session.join(room_id, role=role, host_key=host_key)
        await self._joined(state)
        return state

    async def _joined(self, state: SessionState) -> None:
        if state is not SessionState.JOINED:
            return
        await self.local.announce()
        self.grid.mount()

    async def close(self) -> None:
        try:
            self.grid.unmount()
        finally:
            try:
                await self.session.leave()
            finally:
                self.local.close()
                self.relay.close()
                self.registry.detach()
                if self.http_client is not None:
                    await self.http_client.aclose()

    async def __aenter__(self) -> "LiveRoom":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


def build_live_room(
    settings: ClientSettings | None = None,
    *,
    transport: RoomTransport | None = None,
    backend: RoomBackend | None = None,
    token_provider: TokenProvider | None = None,
    connect: Connector | None = None,
    meter_factory: MeterFactory = random_meter_factory,
) -> LiveRoom:
    """Assemble a :class:`LiveRoom`; any capability may be replaced."""

    settings = settings or get_client_settings()
    http_client: httpx.AsyncClient | None = None
    if backend is None or token_provider is None:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    if backend is None:
        backend = HttpRoomBackend(settings.backend_url, host_id=settings.user_id, client=http_client)
    if token_provider is None:
        token_provider = HttpTokenProvider(settings.backend_url, client=http_client)
    if transport is None:
        transport = WebSocketRoomTransport(
            settings.resolved_websocket_url,
            connect=connect,
            join_timeout=settings.join_timeout_seconds,
        )

    registry = PeerRegistry()
    registry.attach(transport)
    relay = MessageRelay(transport)
    local = LocalParticipantController(
        transport,
        relay,
        registry,
        display_name=settings.display_name,
        avatar_url=settings.avatar_url,
    )
    grid = GridPresentation(
        registry,
        relay,
        local,
        transport,
        meter_factory=meter_factory,
        remote_reaction_window=settings.remote_reaction_window_seconds,
        local_reaction_window=settings.local_reaction_window_seconds,
        tick_interval=settings.speaking_tick_seconds,
    )
    session = RoomSessionController(
        backend,
        token_provider,
        transport,
        user_id=settings.user_id,
        role=ParticipantRole.HOST,
        retry=RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        ),
    )
    logger.debug("Built live room client for %s", settings.backend_url)
    return LiveRoom(
        transport=transport,
        registry=registry,
        relay=relay,
        local=local,
        grid=grid,
        session=session,
        http_client=http_client,
        default_title=settings.default_room_title,
    )


__all__ = ["LiveRoom", "build_live_room"]
