"""Card view models for the participant grid.

Each card derives everything it shows from the registry, the relay and a few
locally simulated values (reaction overlay, speaking level). Timers and relay
subscriptions are owned by the card and released on ``unmount()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol, Sequence

from .capability import RoomTransport
from .errors import HostOnlyActionError, TransportError
from .local import LocalParticipantController
from .messages import EMOJI_LABEL, DataMessage, EmojiReaction, Whisper
from .models import (
    MAX_SPEAKING_LEVEL,
    MediaState,
    ParticipantRole,
    ReactionEvent,
    avatar_fallback,
    display_name_fallback,
)
from .registry import PeerRegistry
from .relay import MessageRelay, RelaySubscription, from_peer, with_label

logger = logging.getLogger(__name__)

REMOTE_REACTION_WINDOW = 3.0
LOCAL_REACTION_WINDOW = 2.0
SPEAKING_TICK_INTERVAL = 0.3


# ---------------------------------------------------------------------------
# Speaking meters
# ---------------------------------------------------------------------------


class SpeakingMeter(Protocol):
    def sample(self) -> int: ...


class RandomSpeakingMeter:
    """Visual stand-in that ignores audio entirely."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def sample(self) -> int:
        return self._rng.randint(0, MAX_SPEAKING_LEVEL)


class AudioLevelMeter:
    """Discretise a normalised audio level (0.0-1.0) into bar heights."""

    def __init__(
        self,
        source: Callable[[], float],
        thresholds: Sequence[float] = (0.05, 0.2, 0.45),
    ) -> None:
        if len(thresholds) != MAX_SPEAKING_LEVEL:
            raise ValueError(f"Expected {MAX_SPEAKING_LEVEL} thresholds, got {len(thresholds)}")
        self._source = source
        self._thresholds = tuple(sorted(thresholds))

    def sample(self) -> int:
        level = self._source()
        return sum(1 for threshold in self._thresholds if level >= threshold)


MeterFactory = Callable[[str], SpeakingMeter]


def random_meter_factory(peer_id: str) -> SpeakingMeter:
    return RandomSpeakingMeter()


def _clamp_level(value: int) -> int:
    return max(0, min(MAX_SPEAKING_LEVEL, int(value)))


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------


class Affordance(str, Enum):
    TOGGLE_MUTE = "toggle-mute"
    TOGGLE_VIDEO = "toggle-video"
    PIN = "pin"
    APPROVE = "approve"
    REMOVE = "remove"
    WHISPER = "whisper"


HOST_AFFORDANCES = frozenset({Affordance.PIN, Affordance.REMOVE, Affordance.WHISPER})
MEDIA_AFFORDANCES = frozenset({Affordance.TOGGLE_MUTE, Affordance.TOGGLE_VIDEO})


@dataclass(frozen=True, slots=True)
class CardView:
    peer_id: str
    display_name: str
    avatar_url: str
    role: str
    is_local: bool = False
    is_speaker: bool = False
    hand_raised: bool = False
    is_sharing: bool = False
    muted: bool = False
    video_off: bool = False
    speaking_level: int = 0
    reaction: str | None = None
    pinned: bool = False
    affordances: frozenset[Affordance] = frozenset()

    @property
    def shows_host_badge(self) -> bool:
        return self.role == ParticipantRole.HOST.value

    def can(self, affordance: Affordance) -> bool:
        return affordance in self.affordances


@dataclass(frozen=True, slots=True)
class GridView:
    local: CardView | None
    cards: tuple[CardView, ...]
    pinned_id: str | None = None


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


class _ReactionOverlay:
    """Single-slot reaction display; a newer reaction replaces the current one."""

    def __init__(self, window: float, on_change: Callable[[], None]) -> None:
        self._window = window
        self._on_change = on_change
        self._current: ReactionEvent | None = None
        self._handle: asyncio.TimerHandle | None = None

    @property
    def current(self) -> ReactionEvent | None:
        return self._current

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def show(self, event: ReactionEvent) -> None:
        self.cancel()
        self._current = event
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._window, self._expire, event)
        self._on_change()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def reset(self) -> None:
        self.cancel()
        self._current = None

    def _expire(self, event: ReactionEvent) -> None:
        if self._current is not event:
            return
        self._handle = None
        self._current = None
        self._on_change()


class _CardBase:
    def __init__(self, peer_id: str, *, reaction_window: float, on_change: Callable[[], None] | None) -> None:
        self.peer_id = peer_id
        self._on_change = on_change
        self._overlay = _ReactionOverlay(reaction_window, self._changed)
        self._subscription: RelaySubscription | None = None
        self._mounted = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def reaction(self) -> str | None:
        current = self._overlay.current
        return current.payload if current is not None else None

    @property
    def has_pending_timers(self) -> bool:
        return self._overlay.pending

    def _on_message(self, message: DataMessage, sender_id: str) -> None:
        match message:
            case EmojiReaction(emoji=emoji) if self._mounted:
                self._overlay.show(ReactionEvent(sender_id=sender_id, payload=emoji, label=message.label))
            case _:
                return

    def _release(self) -> None:
        try:
            self._overlay.reset()
        finally:
            if self._subscription is not None:
                self._subscription.close()
                self._subscription = None

    def _changed(self) -> None:
        if self._on_change is not None and self._mounted:
            try:
                self._on_change()
            except Exception:
                logger.exception("Card change listener failed")


class ParticipantCard(_CardBase):
    """Card for one remote participant."""

    def __init__(
        self,
        peer_id: str,
        registry: PeerRegistry,
        relay: MessageRelay,
        *,
        meter: SpeakingMeter | None = None,
        reaction_window: float = REMOTE_REACTION_WINDOW,
        tick_interval: float = SPEAKING_TICK_INTERVAL,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        super().__init__(peer_id, reaction_window=reaction_window, on_change=on_change)
        self._registry = registry
        self._relay = relay
        self._meter = meter or RandomSpeakingMeter()
        self._tick_interval = tick_interval
        self._ticker: asyncio.Task[None] | None = None

    @property
    def is_speaker(self) -> bool:
        role = self._registry.role_of(self.peer_id)
        return role is not None and role.is_speaking_role

    @property
    def speaking_level(self) -> int:
        media = self._media()
        return media.speaking_level if media is not None else 0

    @property
    def has_pending_timers(self) -> bool:
        return self._overlay.pending or (self._ticker is not None and not self._ticker.done())

    def mount(self) -> None:
        if self._mounted:
            return
        self._subscription = self._relay.subscribe(from_peer(self.peer_id, EMOJI_LABEL), self._on_message)
        self._mounted = True
        self.refresh()

    def refresh(self) -> None:
        """Start or stop the speaking animation to match the current role."""

        if not self._mounted:
            return
        if self.is_speaker:
            if self._ticker is None or self._ticker.done():
                self._ticker = asyncio.get_running_loop().create_task(
                    self._tick(), name=f"speaking-level-{self.peer_id}"
                )
        else:
            self._stop_ticker()
            media = self._media()
            if media is not None:
                media.speaking_level = 0

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        try:
            self._stop_ticker()
        finally:
            self._release()

    async def aclose(self) -> None:
        ticker = self._ticker
        self.unmount()
        if ticker is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await ticker

    def toggle_mute(self) -> bool:
        media = self._media()
        if media is None:
            return False
        media.muted = not media.muted
        self._changed()
        return media.muted

    def toggle_video(self) -> bool:
        media = self._media()
        if media is None:
            return False
        media.video_off = not media.video_off
        self._changed()
        return media.video_off

    def render(self, viewer_role: ParticipantRole, *, pinned: bool = False) -> CardView | None:
        participant = self._registry.get(self.peer_id)
        if participant is None:
            return None
        metadata = participant.metadata
        hand_raised = metadata.is_hand_raised if metadata is not None else False
        affordances = set(MEDIA_AFFORDANCES)
        if viewer_role is ParticipantRole.HOST:
            affordances |= HOST_AFFORDANCES
            if hand_raised:
                affordances.add(Affordance.APPROVE)
        return CardView(
            peer_id=self.peer_id,
            display_name=display_name_fallback(self.peer_id, metadata),
            avatar_url=avatar_fallback(self.peer_id, metadata),
            role=participant.role.value,
            is_speaker=participant.role.is_speaking_role,
            hand_raised=hand_raised,
            is_sharing=metadata.is_sharing if metadata is not None else False,
            muted=participant.media.muted,
            video_off=participant.media.video_off,
            speaking_level=participant.media.speaking_level,
            reaction=self.reaction,
            pinned=pinned,
            affordances=frozenset(affordances),
        )

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            media = self._media()
            if media is None:
                continue
            try:
                level = _clamp_level(self._meter.sample())
            except Exception:
                logger.exception("Speaking meter failed for peer %s", self.peer_id)
                level = 0
            if level != media.speaking_level:
                media.speaking_level = level
                self._changed()

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            if not self._ticker.done():
                self._ticker.cancel()
            self._ticker = None

    def _media(self) -> MediaState | None:
        participant = self._registry.get(self.peer_id)
        return participant.media if participant is not None else None


class LocalCard(_CardBase):
    """Card for the local participant; shows every reaction received."""

    def __init__(
        self,
        controller: LocalParticipantController,
        relay: MessageRelay,
        *,
        reaction_window: float = LOCAL_REACTION_WINDOW,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        super().__init__(controller.peer_id or "", reaction_window=reaction_window, on_change=on_change)
        self._controller = controller
        self._relay = relay
        self._remove_listener: Callable[[], None] | None = None

    def mount(self) -> None:
        if self._mounted:
            return
        self._subscription = self._relay.subscribe(with_label(EMOJI_LABEL), self._on_message)
        self._remove_listener = self._controller.add_listener(self._changed)
        self._mounted = True

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        try:
            if self._remove_listener is not None:
                self._remove_listener()
                self._remove_listener = None
        finally:
            self._release()

    def render(self) -> CardView | None:
        peer_id = self._controller.peer_id
        if peer_id is None:
            return None
        metadata = self._controller.metadata
        media = self._controller.media
        role = self._controller.role
        return CardView(
            peer_id=peer_id,
            display_name="You",
            avatar_url=avatar_fallback(peer_id, metadata),
            role=role.value,
            is_local=True,
            is_speaker=role.is_speaking_role,
            hand_raised=metadata.is_hand_raised,
            is_sharing=metadata.is_sharing,
            muted=media.muted,
            video_off=media.video_off,
            reaction=self.reaction,
            affordances=MEDIA_AFFORDANCES,
        )


# ---------------------------------------------------------------------------
# Grid container
# ---------------------------------------------------------------------------


class GridPresentation:
    """One card per registry entry plus the local card.

    The container owns the pinned selection (a single id, last write wins) and
    gates host-only actions on the local role before calling the transport.
    """

    def __init__(
        self,
        registry: PeerRegistry,
        relay: MessageRelay,
        local: LocalParticipantController,
        transport: RoomTransport,
        *,
        meter_factory: MeterFactory = random_meter_factory,
        remote_reaction_window: float = REMOTE_REACTION_WINDOW,
        local_reaction_window: float = LOCAL_REACTION_WINDOW,
        tick_interval: float = SPEAKING_TICK_INTERVAL,
    ) -> None:
        self._registry = registry
        self._relay = relay
        self._local = local
        self._transport = transport
        self._meter_factory = meter_factory
        self._remote_window = remote_reaction_window
        self._tick_interval = tick_interval
        self._cards: dict[str, ParticipantCard] = {}
        self._local_card = LocalCard(
            local, relay, reaction_window=local_reaction_window, on_change=self._changed
        )
        self._pinned_id: str | None = None
        self._listeners: list[Callable[[], None]] = []
        self._remove_registry_listener: Callable[[], None] | None = None
        self._remove_local_listener: Callable[[], None] | None = None
        self._mounted = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._remove_registry_listener = self._registry.add_listener(self._on_registry_change)
        self._remove_local_listener = self._local.add_listener(self._on_local_change)
        self._on_local_change()
        self._local_card.mount()
        self.sync()

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        try:
            for remove in (self._remove_registry_listener, self._remove_local_listener):
                if remove is not None:
                    remove()
            self._remove_registry_listener = None
            self._remove_local_listener = None
        finally:
            cards = list(self._cards.values())
            self._cards.clear()
            for card in cards:
                try:
                    card.unmount()
                except Exception:
                    logger.exception("Failed to unmount card for peer %s", card.peer_id)
            self._local_card.unmount()

    async def __aenter__(self) -> "GridPresentation":
        self.mount()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.unmount()

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    @property
    def viewer_role(self) -> ParticipantRole:
        return self._local.role

    @property
    def pinned_id(self) -> str | None:
        return self._pinned_id

    @property
    def local_card(self) -> LocalCard:
        return self._local_card

    def card(self, peer_id: str) -> ParticipantCard | None:
        return self._cards.get(peer_id)

    def cards(self) -> list[ParticipantCard]:
        return [self._cards[peer_id] for peer_id in self._registry.list() if peer_id in self._cards]

    def render(self) -> GridView:
        viewer = self.viewer_role
        views = []
        for card in self.cards():
            view = card.render(viewer, pinned=card.peer_id == self._pinned_id)
            if view is not None:
                views.append(view)
        return GridView(local=self._local_card.render(), cards=tuple(views), pinned_id=self._pinned_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    def sync(self) -> None:
        if not self._mounted:
            return
        current = self._registry.list()
        for peer_id in list(self._cards):
            if peer_id not in current:
                self._cards.pop(peer_id).unmount()
        for peer_id in current:
            card = self._cards.get(peer_id)
            if card is None:
                card = ParticipantCard(
                    peer_id,
                    self._registry,
                    self._relay,
                    meter=self._meter_factory(peer_id),
                    reaction_window=self._remote_window,
                    tick_interval=self._tick_interval,
                    on_change=self._changed,
                )
                self._cards[peer_id] = card
                card.mount()
            else:
                card.refresh()
        if self._pinned_id is not None and self._pinned_id not in self._cards:
            self._pinned_id = None

    def _on_registry_change(self, peer_id: str | None) -> None:
        self.sync()
        self._changed()

    def _on_local_change(self) -> None:
        if self._local_card.peer_id != (self._local.peer_id or ""):
            self._local_card.peer_id = self._local.peer_id or ""

    # ------------------------------------------------------------------
    # Host actions
    # ------------------------------------------------------------------
    def pin(self, peer_id: str | None) -> None:
        self._require_host("pin participants")
        if peer_id is not None and peer_id not in self._cards:
            return
        if self._pinned_id != peer_id:
            self._pinned_id = peer_id
            self._changed()

    def unpin(self) -> None:
        self.pin(None)

    async def approve(self, peer_id: str) -> bool:
        """Promote a participant with a raised hand to speaker."""

        self._require_host("approve speakers")
        metadata = self._registry.metadata_of(peer_id)
        if metadata is None or not metadata.is_hand_raised:
            return False
        return await self._call_transport(
            "approve speaker", self._transport.update_role(peer_id, ParticipantRole.SPEAKER)
        )

    async def remove(self, peer_id: str) -> bool:
        self._require_host("remove participants")
        if peer_id not in self._registry:
            return False
        return await self._call_transport("remove participant", self._transport.kick_peer(peer_id))

    async def whisper(self, peer_id: str, text: str) -> bool:
        self._require_host("whisper")
        if peer_id not in self._registry:
            return False
        return await self._relay.send([peer_id], Whisper(text))

    def _require_host(self, action: str) -> None:
        if self.viewer_role is not ParticipantRole.HOST:
            raise HostOnlyActionError(action)

    async def _call_transport(self, action: str, call) -> bool:
        try:
            await call
        except TransportError:
            logger.warning("Room transport rejected %s request", action, exc_info=True)
            return False
        return True

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Grid listener failed")


__all__ = [
    "Affordance",
    "AudioLevelMeter",
    "CardView",
    "GridPresentation",
    "GridView",
    "LOCAL_REACTION_WINDOW",
    "LocalCard",
    "MeterFactory",
    "ParticipantCard",
    "REMOTE_REACTION_WINDOW",
    "RandomSpeakingMeter",
    "SPEAKING_TICK_INTERVAL",
    "SpeakingMeter",
    "random_meter_factory",
]
