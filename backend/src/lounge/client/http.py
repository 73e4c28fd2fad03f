"""HTTP adapters for room creation and token issuance."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from lounge.room.errors import RoomCreationError, TokenError
from lounge.room.models import ParticipantRole, Room

logger = logging.getLogger(__name__)


class _ApiClient:
    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=self._get_headers())
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=self._get_headers())

    async def _get(self, path: str) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._client is not None:
            return await self._client.get(url, headers=self._get_headers())
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, headers=self._get_headers())


class HttpRoomBackend(_ApiClient):
    """Create rooms through ``POST /create-room`` and look them up by id."""

    def __init__(
        self,
        base_url: str,
        *,
        host_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        super().__init__(base_url, client=client, timeout=timeout)
        self.host_id = host_id

    async def create_room(self, title: str) -> Room:
        payload: dict[str, Any] = {"title": title}
        if self.host_id:
            payload["hostId"] = self.host_id
        try:
            response = await self._post("/create-room", payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RoomCreationError(f"Room creation request failed: {exc}") from exc

        data = body.get("data") if isinstance(body, dict) else None
        room_id = data.get("roomId") if isinstance(data, dict) else None
        if not room_id:
            raise RoomCreationError("Room creation response did not include a room id")
        host_key = data.get("hostKey")
        return Room(
            room_id=str(room_id),
            title=title,
            host_id=self.host_id,
            host_key=str(host_key) if host_key else None,
        )

    async def get_room(self, room_id: str) -> Room:
        try:
            response = await self._get(f"/rooms/{room_id}")
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RoomCreationError(f"Room lookup failed: {exc}") from exc

        if not isinstance(body, dict) or not body.get("room_id"):
            raise RoomCreationError("Room lookup response did not include a room id")
        return Room(
            room_id=str(body["room_id"]),
            title=str(body.get("title") or ""),
            is_live=bool(body.get("is_live", True)),
        )


class HttpTokenProvider(_ApiClient):
    """Fetch room join tokens through ``POST /generateHuddleToken``."""

    async def fetch_token(
        self, room_id: str, *, user_id: str, role: ParticipantRole, host_key: str | None = None
    ) -> str:
        payload = {"userId": user_id, "role": role.value, "roomId": room_id}
        if host_key:
            payload["hostKey"] = host_key
        try:
            response = await self._post("/generateHuddleToken", payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TokenError(f"Token request failed: {exc}") from exc

        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            raise TokenError("Token response did not include a token")
        logger.debug("Acquired %s token for room %s", role.value, room_id)
        return str(token)


__all__ = ["HttpRoomBackend", "HttpTokenProvider"]
