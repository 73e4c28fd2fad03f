"""Application service helpers."""

from .conferencing import ConferencingClient, ConferencingError, generate_room_id

__all__ = ["ConferencingClient", "ConferencingError", "generate_room_id"]
