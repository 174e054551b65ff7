"""Expo push delivery adapter.

The delivery handle is an Expo push token; no other contact data is sent.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from needmatch.adapters.notification_formatting import format_notification, scrub_scores
from needmatch.core.errors import DeliveryTransportFailure
from needmatch.core.models import OutboundMessage

LOGGER = logging.getLogger(__name__)

EXPO_PUSH_URL = "https://exp.host/--/api/v2/push/send"


class ExpoPushDelivery:
    """DeliveryPort backed by the Expo push service."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._access_token = access_token
        self._timeout = timeout
        self._client = client

    def _headers(self) -> dict:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        return headers

    async def notify(self, recipient_handle: str, message: OutboundMessage) -> bool:
        payload = {
            "to": recipient_handle,
            "title": message.title,
            "body": format_notification(message, mode="plain"),
            "sound": "default",
            "data": {"item_id": message.item_id, "why": scrub_scores(message.why_relevant)},
        }
        try:
            if self._client is not None:
                response = await self._client.post(EXPO_PUSH_URL, json=payload, headers=self._headers())
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(EXPO_PUSH_URL, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise DeliveryTransportFailure(f"Expo push request failed: {e}") from e

        if response.status_code != 200:
            raise DeliveryTransportFailure(f"Expo push error {response.status_code}: {response.text}")
        ticket = response.json().get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") != "ok":
            LOGGER.warning("Expo rejected push for token %s...: %s", recipient_handle[:20], ticket.get("message"))
            return False
        return True
