"""Delivery dispatch (core domain).

At-most-once governs the decision to notify, not the transport: once the
gate has committed a notification row it is never retracted, even when the
transport keeps failing. Failures end up in the operator queue instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Sequence, Tuple

from needmatch.core.config import DispatchConfig
from needmatch.core.judge import FALLBACK_JUSTIFICATION
from needmatch.core.kill_switch import DELIVERY, ensure_enabled
from needmatch.core.models import Candidate, Item, OutboundMessage, Recipient, utcnow
from needmatch.core.ports import DeliveryPort, StoragePort

LOGGER = logging.getLogger(__name__)

NOTIFICATION_TITLE = "You might be interested in this"


@dataclass
class DispatchReport:
    delivered: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)


def build_message(item: Item, justification: str, snippet_chars: int) -> OutboundMessage:
    """Create transport-neutral content for one accepted notification."""

    # Snippet is clipped to keep push payloads small without losing the gist.
    body = item.description[:snippet_chars].strip()
    return OutboundMessage(
        item_id=item.id,
        title=NOTIFICATION_TITLE,
        body=body,
        why_relevant=justification,
        category=item.category,
    )


class DeliveryDispatcher:
    """Hands accepted (item, recipient, justification) triples to the transport."""

    def __init__(
        self,
        storage: StoragePort,
        delivery: DeliveryPort,
        config: DispatchConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._delivery = delivery
        self._config = config
        self._sleep = sleep

    async def dispatch(self, accepted: Sequence[Candidate]) -> DispatchReport:
        """Deliver accepted candidates; raises KillSwitchActive when delivery is off."""

        ensure_enabled(self._storage, DELIVERY)
        triples = [
            (c.item, c.recipient, c.justification or FALLBACK_JUSTIFICATION) for c in accepted
        ]
        return await self._deliver_all(triples)

    async def dispatch_pending(self, limit: int = 100) -> DispatchReport:
        """Retry notifications that were committed but never delivered."""

        ensure_enabled(self._storage, DELIVERY)
        triples = []
        for notification in self._storage.list_undelivered(limit):
            item = self._storage.get_item(notification.item_id)
            recipient = self._storage.get_recipient(notification.recipient_id)
            if item is None or recipient is None:
                LOGGER.warning(
                    "Skipping pending notification %s/%s: entity missing",
                    notification.item_id,
                    notification.recipient_id,
                )
                continue
            triples.append((item, recipient, notification.justification))
        return await self._deliver_all(triples)

    async def _deliver_all(self, triples: Sequence[Tuple[Item, Recipient, str]]) -> DispatchReport:
        report = DispatchReport()
        if not triples:
            return report
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrency))

        async def _bounded(item: Item, recipient: Recipient, justification: str) -> bool:
            async with semaphore:
                return await self._deliver_one(item, recipient, justification)

        results = await asyncio.gather(*(_bounded(*triple) for triple in triples))
        for (item, recipient, _), ok in zip(triples, results):
            (report.delivered if ok else report.failed).append((item.id, recipient.id))
        return report

    async def _deliver_one(self, item: Item, recipient: Recipient, justification: str) -> bool:
        message = build_message(item, justification, self._config.snippet_chars)
        attempts = max(1, self._config.max_attempts)
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                if await self._delivery.notify(recipient.delivery_handle, message):
                    self._storage.mark_delivered(item.id, recipient.id, utcnow())
                    LOGGER.info("Delivered item %s to recipient %s", item.id, recipient.id)
                    return True
                last_error = "transport rejected the message"
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
            LOGGER.warning(
                "Delivery attempt %s/%s failed for item %s to recipient %s: %s",
                attempt,
                attempts,
                item.id,
                recipient.id,
                last_error,
            )
            if attempt < attempts:
                await self._sleep(self._backoff(attempt))

        self._storage.record_delivery_failure(item.id, recipient.id, attempts, last_error, utcnow())
        LOGGER.warning("Queued item %s / recipient %s for operator review", item.id, recipient.id)
        return False

    def _backoff(self, attempt: int) -> float:
        delay = self._config.backoff_seconds * (2 ** (attempt - 1))
        return min(delay, self._config.max_backoff_seconds)
