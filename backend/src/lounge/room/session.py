"""Room lifecycle: create, acquire a token, join, leave."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from .capability import RoomBackend, RoomJoined, RoomTransport, TokenProvider
from .errors import JoinError, RoomCreationError, RoomError, TokenError, TransportError
from .models import ParticipantRole, Room

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ROOM_TITLE = "Queen's Lounge"


class SessionState(str, Enum):
    IDLE = "idle"
    CREATING = "creating"
    JOINING = "joining"
    JOINED = "joined"
    LEFT = "left"
    ERROR = "error"


_STARTABLE = frozenset({SessionState.IDLE, SessionState.LEFT, SessionState.ERROR})


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff applied to each network step."""

    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""

        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True, slots=True)
class SessionFailure:
    stage: SessionState
    reason: str
    attempts: int
    error: BaseException | None = None


StateListener = Callable[[SessionState], None]


class RoomSessionController:
    """Drive a single room session through its lifecycle.

    ``joined`` is only reachable through ``creating`` (booking a new room or
    resolving an existing one) followed by ``joining``. Failures never raise out
    of ``start()`` or ``join()``; they land in ``state == ERROR`` with
    ``failure`` populated.
    """

    def __init__(
        self,
        backend: RoomBackend,
        token_provider: TokenProvider,
        transport: RoomTransport,
        *,
        user_id: str,
        role: ParticipantRole = ParticipantRole.HOST,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._token_provider = token_provider
        self._transport = transport
        self._user_id = user_id
        self._role = role
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._state = SessionState.IDLE
        self._room: Room | None = None
        self._joined: RoomJoined | None = None
        self._failure: SessionFailure | None = None
        self._history: list[SessionState] = [SessionState.IDLE]
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def room(self) -> Room | None:
        return self._room

    @property
    def room_id(self) -> str | None:
        return self._room.room_id if self._room is not None else None

    @property
    def local_peer_id(self) -> str | None:
        return self._joined.local_peer_id if self._joined is not None else None

    @property
    def failure(self) -> SessionFailure | None:
        return self._failure

    @property
    def history(self) -> tuple[SessionState, ...]:
        return tuple(self._history)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self, title: str = DEFAULT_ROOM_TITLE) -> SessionState:
        """Create a room titled *title* and join it."""

        self._begin()
        self._set_state(SessionState.CREATING)
        try:
            room = await self._attempt(SessionState.CREATING, lambda: self._backend.create_room(title))
        except _StepFailed:
            return self._state
        self._room = room
        logger.info("Created room %s (%s)", room.room_id, room.title)
        return await self._join(room, self._role)

    async def join(
        self,
        room_id: str,
        *,
        role: ParticipantRole | None = None,
        host_key: str | None = None,
    ) -> SessionState:
        """Look up an existing room through the backend and join it."""

        self._begin()
        self._set_state(SessionState.CREATING)
        try:
            room = await self._attempt(SessionState.CREATING, lambda: self._backend.get_room(room_id))
        except _StepFailed:
            return self._state
        if not room.is_live:
            logger.warning("Room %s has ended; not joining", room_id)
            self._fail(SessionState.CREATING, "Room has ended", 1, RoomCreationError(f"Room {room_id} has ended"))
            return self._state
        if host_key is not None:
            room = replace(room, host_key=host_key)
        self._room = room
        return await self._join(room, role or self._role)

    async def leave(self) -> None:
        if self._state is not SessionState.JOINED:
            return
        try:
            await self._transport.leave_room()
        except TransportError:
            logger.warning("Room transport failed while leaving room %s", self.room_id, exc_info=True)
        finally:
            self._joined = None
            self._set_state(SessionState.LEFT)

    async def __aenter__(self) -> "RoomSessionController":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.leave()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _begin(self) -> None:
        if self._state not in _STARTABLE:
            raise RuntimeError(f"Session already {self._state.value}")
        self._failure = None
        self._joined = None
        self._room = None

    async def _join(self, room: Room, role: ParticipantRole) -> SessionState:
        self._set_state(SessionState.JOINING)
        try:
            token = await self._attempt(
                SessionState.JOINING,
                lambda: self._token_provider.fetch_token(
                    room.room_id, user_id=self._user_id, role=role, host_key=room.host_key
                ),
                wrap=TokenError,
            )
            joined = await self._attempt(
                SessionState.JOINING,
                lambda: self._transport.join_room(room.room_id, token),
                wrap=JoinError,
            )
        except _StepFailed:
            return self._state
        self._joined = joined
        self._set_state(SessionState.JOINED)
        logger.info("Joined room %s as %s (%s)", room.room_id, joined.local_peer_id, joined.role.value)
        return self._state

    async def _attempt(
        self,
        stage: SessionState,
        call: Callable[[], Awaitable[T]],
        *,
        wrap: type[RoomError] = RoomCreationError,
    ) -> T:
        attempts = self._retry.attempts
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except RoomError as exc:
                last_error = exc if isinstance(exc, wrap) else wrap(str(exc))
                if attempt < attempts:
                    delay = self._retry.delay_for(attempt)
                    logger.warning(
                        "%s step failed (attempt %s/%s); retrying in %.2fs: %s",
                        stage.value,
                        attempt,
                        attempts,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue
            except Exception as exc:
                logger.exception("Unexpected error during %s step", stage.value)
                self._fail(stage, str(exc) or type(exc).__name__, attempt, exc)
                raise _StepFailed from exc
            break
        reason = str(last_error) if last_error is not None else "unknown error"
        logger.error("%s step failed after %s attempts: %s", stage.value, attempts, reason)
        self._fail(stage, reason, attempts, last_error)
        raise _StepFailed

    def _fail(self, stage: SessionState, reason: str, attempts: int, error: BaseException | None) -> None:
        self._failure = SessionFailure(stage=stage, reason=reason, attempts=attempts, error=error)
        self._set_state(SessionState.ERROR)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        self._history.append(state)
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Session state listener failed")


class _StepFailed(Exception):
    """Internal signal that a step already recorded its failure."""


__all__ = [
    "DEFAULT_ROOM_TITLE",
    "RetryPolicy",
    "RoomSessionController",
    "SessionFailure",
    "SessionState",
    "StateListener",
]
