"""Frame names exchanged over the room WebSocket.

Every frame is a JSON object with a ``type`` key. Peers are serialised as
``{"peerId", "role", "metadata"}`` with camelCase metadata keys.
"""

from __future__ import annotations

# Server -> client
WELCOME = "welcome"
PEERS = "peers"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
PEER_UPDATED = "peer-updated"
DATA = "data"
MUTE = "mute"
REMOVED = "removed"
ERROR = "error"
PING = "ping"
PONG = "pong"

# Client -> server
METADATA = "metadata"
CONTROL = "control"

# Control actions
SET_ROLE = "set-role"
REMOVE = "remove"
MUTE_EVERYONE = "mute-everyone"

CONTROL_ACTIONS = frozenset({SET_ROLE, REMOVE, MUTE_EVERYONE})

# Reasons carried by ``removed`` frames
REASON_KICKED = "kicked"
REASON_ROOM_ENDED = "room-ended"

__all__ = [
    "CONTROL",
    "CONTROL_ACTIONS",
    "DATA",
    "ERROR",
    "METADATA",
    "MUTE",
    "MUTE_EVERYONE",
    "PEERS",
    "PEER_JOINED",
    "PEER_LEFT",
    "PEER_UPDATED",
    "PING",
    "PONG",
    "REASON_KICKED",
    "REASON_ROOM_ENDED",
    "REMOVE",
    "REMOVED",
    "SET_ROLE",
    "WELCOME",
]
