"""Metric definitions for live rooms and the realtime relay."""

from __future__ import annotations

from .registry import registry


realtime_events_total = registry.counter(
    "realtime_events_total",
    "Count of realtime frames processed by the room signal manager.",
    label_names=("topic", "direction", "action"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Number of active websocket connections handled locally.",
    label_names=("scope",),
)

realtime_subscriptions = registry.gauge(
    "realtime_pubsub_subscriptions",
    "Number of active broker subscriptions.",
    label_names=("topic", "backend"),
)

realtime_publish_errors_total = registry.counter(
    "realtime_publish_errors_total",
    "Number of failed attempts to publish realtime payloads to the broker.",
    label_names=("topic", "backend", "reason"),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Number of broker reconnects performed after a failure.",
    label_names=("backend", "reason"),
)

room_requests_rejected_total = registry.counter(
    "room_requests_rejected_total",
    "Client requests rejected by the room signal manager.",
    label_names=("action", "reason"),
)

rooms_created_total = registry.counter(
    "rooms_created_total",
    "Number of live rooms created.",
    label_names=("provider",),
)

room_tokens_issued_total = registry.counter(
    "room_tokens_issued_total",
    "Number of room join tokens issued.",
    label_names=("role",),
)

rooms_live = registry.gauge(
    "rooms_live",
    "Number of rooms with at least one locally connected participant.",
)
