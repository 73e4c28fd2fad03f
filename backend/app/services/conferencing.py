"""Client for the external conferencing provider's create-room API."""

from __future__ import annotations

import logging
import secrets
import string
from typing import Any

import httpx

from app.config import Settings

logger = logging.getLogger(__name__)

_ROOM_ID_ALPHABET = string.ascii_lowercase


class ConferencingError(RuntimeError):
    """Raised when the provider cannot create a room."""


def generate_room_id() -> str:
    """Return an id shaped like provider ids (``abc-defg-hij``)."""

    parts = ("".join(secrets.choice(_ROOM_ID_ALPHABET) for _ in range(size)) for size in (3, 4, 3))
    return "-".join(parts)


class ConferencingClient:
    """Books rooms with the provider, or locally when none is configured."""

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.api_url = str(settings.conferencing_api_url) if settings.conferencing_api_url else None
        self.api_key = settings.conferencing_api_key
        self.room_type = settings.conferencing_room_type
        self.timeout = settings.conferencing_timeout_seconds
        self._transport = transport

    @property
    def provider(self) -> str:
        return "external" if self.api_url else "local"

    def _get_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    async def create_room(self, title: str) -> str:
        """Create a room titled *title* and return its id."""

        if self.api_url is None:
            room_id = generate_room_id()
            logger.debug("No conferencing provider configured; generated room id %s", room_id)
            return room_id

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.api_url,
                    json={"title": title, "roomType": self.room_type},
                    headers=self._get_headers(),
                )
                response.raise_for_status()
                body: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Conferencing provider failed to create room: %s", exc)
            raise ConferencingError("Failed to create room") from exc

        data = body.get("data") if isinstance(body, dict) else None
        room_id = None
        if isinstance(data, dict):
            room_id = data.get("roomId")
        if room_id is None and isinstance(body, dict):
            room_id = body.get("roomId")
        if not isinstance(room_id, str) or not room_id:
            raise ConferencingError("Conferencing provider returned no room id")
        return room_id
