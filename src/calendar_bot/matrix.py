"""Minimal Matrix client-server API client used to deliver reminders."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from calendar_bot.reminders.render import RenderedMessage

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised when a message could not be confirmed as delivered."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def _matrix_error(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        errcode = payload.get("errcode")
        error = payload.get("error")
        parts = [p for p in (errcode, error) if isinstance(p, str) and p.strip()]
        if parts:
            return " ".join(": ".join(parts).split())[:200]
    return f"HTTP {response.status_code}"


class MatrixClient:
    """Posts ``m.room.message`` events as the bot user."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        homeserver_url: str,
        access_token: str,
    ) -> None:
        self._http_client = http_client
        self._base_url = f"{homeserver_url.rstrip('/')}/_matrix/client/v3"
        self._headers = {"Authorization": f"Bearer {access_token}"}

    def __repr__(self) -> str:
        return f"MatrixClient(base_url={self._base_url!r}, access_token=<REDACTED>)"

    async def _request(self, method: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http_client.request(
                method, f"{self._base_url}{path}", json=body, headers=self._headers
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Matrix request failed: {type(exc).__name__}") from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise DeliveryError(
                f"Matrix {method} {path.split('/')[1]} failed "
                f"({response.status_code}): {_matrix_error(response)}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DeliveryError("Matrix homeserver returned invalid JSON") from exc
        return payload if isinstance(payload, dict) else {}

    async def join(self, room: str) -> str:
        """Join *room* (an id or alias) and return its room id.

        Joining a room the bot is already in is a no-op on the homeserver.
        """
        payload = await self._request("POST", f"/join/{quote(room, safe='')}", {})
        room_id = payload.get("room_id")
        if not isinstance(room_id, str) or not room_id:
            raise DeliveryError(f"Matrix join response for {room!r} carried no room_id")
        return room_id

    async def send(self, room: str, message: RenderedMessage, *, txn_id: str) -> str:
        """Send *message* to *room* and return the new event id.

        Reusing *txn_id* makes the homeserver return the original event
        instead of posting a duplicate.

        Raises
        ------
        DeliveryError
            On any transport failure or non-2xx response.
        """
        room_id = await self.join(room)
        payload = await self._request(
            "PUT",
            f"/rooms/{quote(room_id, safe='')}/send/m.room.message/{quote(txn_id, safe='')}",
            {
                "msgtype": "m.text",
                "body": message.body,
                "format": "org.matrix.custom.html",
                "formatted_body": message.formatted_body,
            },
        )
        event_id = str(payload.get("event_id", ""))
        logger.info("Sent message to %s (event %s)", room_id, event_id)
        return event_id
