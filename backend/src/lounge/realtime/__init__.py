"""Realtime room relay shared by the service's websocket endpoints."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from .signals import ParticipantState, RoomSignalManager, safe_send_json  # noqa: F401
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError  # noqa: F401

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RealtimeServices:
    """Broker connection plus the room signal manager built on top of it."""

    transport: RedisTransport | None
    signals: RoomSignalManager

    async def start(self) -> None:
        if self.transport is not None:
            try:
                await self.transport.start()
            except (TransportUnavailableError, OSError, ConnectionError):
                logger.warning(
                    "Realtime backend unavailable during startup; continuing without cross-node sync",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                return
            except Exception:
                logger.warning(
                    "Redis realtime backend failed to start; continuing without cross-node sync",
                    exc_info=True,
                )
                return
        await self.signals.start()

    async def stop(self) -> None:
        await self.signals.stop()
        if self.transport is not None:
            await self.transport.stop()


def build_realtime(settings) -> RealtimeServices:
    node_id = settings.realtime_node_id or uuid.uuid4().hex
    transport = None
    if settings.realtime_redis_url:
        transport = RedisTransport(
            BrokerConfig(
                redis_url=settings.realtime_redis_url,
                redis_prefix=settings.realtime_namespace,
                node_id=node_id,
            )
        )
    signals = RoomSignalManager(transport, node_id=node_id, max_speakers=settings.room_max_speakers)
    return RealtimeServices(transport=transport, signals=signals)


__all__ = [
    "BrokerConfig",
    "ParticipantState",
    "RealtimeServices",
    "RedisTransport",
    "RoomSignalManager",
    "TransportUnavailableError",
    "build_realtime",
    "safe_send_json",
]
