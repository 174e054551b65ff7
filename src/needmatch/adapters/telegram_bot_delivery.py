"""Telegram Bot API delivery adapter.

The recipient's delivery handle is the bot chat id the recipient opened.
"""

from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request

from needmatch.adapters.notification_formatting import format_notification
from needmatch.core.errors import DeliveryTransportFailure
from needmatch.core.models import OutboundMessage


class TelegramBotDelivery:
    """DeliveryPort that sends messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, timeout: float = 10.0) -> None:
        self._bot_token = bot_token
        self._timeout = timeout

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    async def notify(self, recipient_handle: str, message: OutboundMessage) -> bool:
        payload = {
            "chat_id": recipient_handle,
            "text": format_notification(message, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        return await asyncio.to_thread(self._post, payload)

    def _post(self, payload: dict) -> bool:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = json.loads(response.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise DeliveryTransportFailure(f"Bot API error {e.code}: {body}") from e
        except urllib.error.URLError as e:
            raise DeliveryTransportFailure(f"Bot API unreachable: {e.reason}") from e
        return bool(body.get("ok", False))
