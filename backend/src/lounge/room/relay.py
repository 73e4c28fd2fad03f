"""Typed fire-and-forget relay over the transport data-message primitive."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from .capability import BROADCAST, DataReceived, RoomTransport, Targets, TransportEvent
from .errors import TransportError
from .messages import DataMessage, decode_message, encode_message

logger = logging.getLogger(__name__)

MessagePredicate = Callable[[str, str], bool]
MessageHandler = Callable[[DataMessage, str], None]


class RelaySubscription:
    """Handle for a relay subscription; released on ``close()``."""

    def __init__(self, relay: "MessageRelay", predicate: MessagePredicate, handler: MessageHandler) -> None:
        self._relay = relay
        self.predicate = predicate
        self.handler = handler
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._relay._discard(self)

    def __enter__(self) -> "RelaySubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MessageRelay:
    """Send and receive labelled payloads without coupling senders to views."""

    def __init__(self, transport: RoomTransport) -> None:
        self._transport = transport
        self._subscriptions: list[RelaySubscription] = []
        self._detach = transport.add_listener(self.handle_event)
        self._send_warning_logged = False

    def close(self) -> None:
        self._detach()
        for subscription in list(self._subscriptions):
            subscription.close()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def send(self, targets: Targets, message: DataMessage) -> bool:
        """Deliver *message* to ``"*"`` or to the given peer ids.

        Returns ``False`` when the transport refused the message. Failures are
        logged, never raised.
        """

        to = _normalise_targets(targets)
        if to is None:
            return False
        label, payload = encode_message(message)
        try:
            await self._transport.send_data(to, payload, label)
        except TransportError:
            if not self._send_warning_logged:
                logger.warning(
                    "Room transport rejected %s message; further failures are logged at debug level",
                    label,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._send_warning_logged = True
            else:
                logger.debug("Room transport rejected %s message", label)
            return False
        except Exception:
            logger.exception("Unexpected error while relaying %s message", label)
            return False
        self._send_warning_logged = False
        return True

    def subscribe(self, predicate: MessagePredicate, handler: MessageHandler) -> RelaySubscription:
        subscription = RelaySubscription(self, predicate, handler)
        self._subscriptions.append(subscription)
        return subscription

    def handle_event(self, event: TransportEvent) -> None:
        if not isinstance(event, DataReceived):
            return
        message = decode_message(event.label, event.payload)
        if message is None:
            return
        for subscription in list(self._subscriptions):
            if subscription.closed or not subscription.predicate(event.label, event.sender_id):
                continue
            try:
                subscription.handler(message, event.sender_id)
            except Exception:
                logger.exception("Relay handler failed for %s message", event.label)

    def _discard(self, subscription: RelaySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)


def _normalise_targets(targets: Targets) -> str | list[str] | None:
    if isinstance(targets, str):
        return BROADCAST if targets == BROADCAST else [targets]
    peers: list[str] = []
    for peer_id in targets:
        if peer_id and peer_id not in peers:
            peers.append(peer_id)
    return peers or None


def from_peer(peer_id: str, *labels: str) -> MessagePredicate:
    """Predicate matching messages sent by *peer_id*, optionally by label."""

    allowed: Sequence[str] = labels

    def predicate(label: str, sender_id: str) -> bool:
        return sender_id == peer_id and (not allowed or label in allowed)

    return predicate


def with_label(*labels: str) -> MessagePredicate:
    def predicate(label: str, sender_id: str) -> bool:
        return label in labels

    return predicate


__all__ = [
    "MessageHandler",
    "MessagePredicate",
    "MessageRelay",
    "RelaySubscription",
    "from_peer",
    "with_label",
]
