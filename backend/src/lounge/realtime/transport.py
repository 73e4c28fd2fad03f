"""Redis pub/sub fan-out for room events across service nodes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

from app.monitoring.metrics import realtime_transport_restarts_total

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]

ROOM_TOPIC = "rooms"

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0


@dataclass(slots=True)
class BrokerConfig:
    redis_url: str | None
    redis_prefix: str = "lounge.realtime"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when publishing while no broker connection is available."""


class Subscription:
    """Handle returned when subscribing to a broker topic."""

    def __init__(self, name: str, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._name = name
        self._cleanup = cleanup

    @property
    def name(self) -> str:
        return self._name

    async def close(self) -> None:
        await self._cleanup()


@dataclass(slots=True)
class _SubscriptionState:
    topic: str
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    suspending: bool = False


class RedisTransport:
    """Pub/sub helper that restores its subscriptions after Redis failures."""

    def __init__(self, config: BrokerConfig, *, client_factory: Callable[[str], Any] | None = None) -> None:
        self._config = config
        self._client_factory = client_factory or _default_client_factory
        self._redis: Any | None = None
        self._states: list[_SubscriptionState] = []
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect()

    async def stop(self) -> None:
        for state in list(self._states):
            await self._close_state(state)
        self._states.clear()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    # ------------------------------------------------------------------
    # Publishing and subscribing
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        channel = self._channel(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload via Redis", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        state = _SubscriptionState(topic=topic, channel=self._channel(topic), handler=handler)

        async def cleanup() -> None:
            await self._close_state(state)

        self._states.append(state)
        try:
            await self._attach_reader(state)
        except Exception as exc:
            await self._close_state(state)
            self._trigger_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        return Subscription(state.channel, cleanup)

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def _connect(self) -> None:
        client = self._client_factory(self._config.redis_url or "")
        try:
            await client.ping()
        except (*_REDIS_ERRORS, OSError):
            logger.exception("Failed to connect to Redis realtime backend")
            with contextlib.suppress(Exception):
                await client.close()
            raise
        self._redis = client

    async def _pause_state(self, state: _SubscriptionState) -> None:
        state.suspending = True
        task = state.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.task = None
        pubsub = state.pubsub
        if pubsub is not None:
            with contextlib.suppress(*_REDIS_ERRORS, OSError):
                await pubsub.unsubscribe(state.channel)
            with contextlib.suppress(*_REDIS_ERRORS, OSError):
                await pubsub.close()
        state.pubsub = None
        state.suspending = False

    async def _close_state(self, state: _SubscriptionState) -> None:
        state.active = False
        await self._pause_state(state)
        if state in self._states:
            self._states.remove(state)

    async def _restart(self, reason: str) -> None:
        async with self._recovery_lock:
            for state in list(self._states):
                await self._pause_state(state)
            if self._redis is not None:
                with contextlib.suppress(*_REDIS_ERRORS, OSError):
                    await self._redis.close()
                self._redis = None
            await self.start()
            for state in [state for state in self._states if state.active]:
                await self._attach_reader(state)

        realtime_transport_restarts_total.labels("redis", reason).inc()
        logger.info(
            "Redis realtime backend recovered", extra={"reason": reason, "subscriptions": len(self._states)}
        )

    async def _attach_reader(self, state: _SubscriptionState) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not configured")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(state.channel)
        except _REDIS_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        state.pubsub = pubsub

        async def reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                raw = message.get("data")
                if not isinstance(raw, str):
                    continue
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarded malformed realtime payload", extra={"channel": state.channel})
                    continue
                try:
                    await state.handler(payload)
                except Exception:
                    logger.exception("Realtime handler failed", extra={"channel": state.channel})

        task = asyncio.create_task(reader(), name=f"realtime-redis-{state.channel}")
        state.task = task
        task.add_done_callback(lambda finished: self._on_reader_done(state, finished))

    def _on_reader_done(self, state: _SubscriptionState, task: asyncio.Task[Any]) -> None:
        if state.task is task:
            state.task = None
        if not state.active or state.suspending or task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Redis subscription reader stopped due to error; scheduling recovery",
                exc_info=exc,
                extra={"channel": state.channel},
            )
        else:
            logger.warning(
                "Redis subscription reader exited unexpectedly; scheduling recovery",
                extra={"channel": state.channel},
            )
        self._trigger_recovery("reader_stopped")

    def _trigger_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(self._recovery_runner(reason), name="realtime-redis-recovery")

    async def _recovery_runner(self, reason: str) -> None:
        attempt = 0
        while True:
            delay = min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY)
            await asyncio.sleep(delay)
            try:
                await self._restart(reason)
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis realtime recovery attempt failed", extra={"attempt": attempt, "reason": reason}
                )
                continue
            break
        self._recovery_task = None

    def _channel(self, topic: str) -> str:
        prefix = self._config.redis_prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic


def _default_client_factory(url: str) -> Any:
    return redis_asyncio.from_url(url, encoding="utf-8", decode_responses=True)


__all__ = [
    "BrokerConfig",
    "MessageHandler",
    "ROOM_TOPIC",
    "RedisTransport",
    "Subscription",
    "TransportUnavailableError",
]
