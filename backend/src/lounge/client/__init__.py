"""Network adapters and composition for room clients."""

from .config import ClientSettings, get_client_settings  # noqa: F401
from .factory import LiveRoom, build_live_room  # noqa: F401
from .http import HttpRoomBackend, HttpTokenProvider  # noqa: F401
from .websocket import WebSocketRoomTransport  # noqa: F401

__all__ = [
    "ClientSettings",
    "get_client_settings",
    "LiveRoom",
    "build_live_room",
    "HttpRoomBackend",
    "HttpTokenProvider",
    "WebSocketRoomTransport",
]
