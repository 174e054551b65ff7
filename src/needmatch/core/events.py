"""Inbound events and the consumer that feeds them to the engine.

Events only carry ids; the engine re-reads current state from storage, so a
replayed or duplicated event is harmless (the gate makes it idempotent).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from needmatch.core.engine import MatchingEngine, MatchOutcome
from needmatch.core.models import utcnow
from needmatch.core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemReady:
    item_id: str


@dataclass(frozen=True)
class RecipientRegistered:
    recipient_id: str


Event = Union[ItemReady, RecipientRegistered]


class EventConsumer:
    """Runs pipeline evaluations for queued events with bounded concurrency."""

    def __init__(self, engine: MatchingEngine, max_concurrent_items: int = 4) -> None:
        self._engine = engine
        self._max_concurrent = max(1, max_concurrent_items)
        self._queue: asyncio.Queue = asyncio.Queue()

    async def publish(self, event: Event) -> None:
        await self._queue.put(event)

    async def handle(self, event: Event) -> Optional[MatchOutcome]:
        """Process one event; errors are logged here and never escape."""

        try:
            if isinstance(event, ItemReady):
                return await self._engine.process_item(event.item_id)
            if isinstance(event, RecipientRegistered):
                return await self._engine.process_recipient(event.recipient_id)
            LOGGER.warning("Ignoring unknown event %r", event)
        except Exception:
            LOGGER.exception("Error while processing %r", event)
        return None

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Consume the queue until ``stop`` is set (or forever)."""

        workers = [asyncio.create_task(self._worker()) for _ in range(self._max_concurrent)]
        try:
            if stop is None:
                await asyncio.gather(*workers)
            else:
                await stop.wait()
                await self._queue.join()
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def drain(self) -> None:
        """Process everything currently queued, then return."""

        stop = asyncio.Event()
        stop.set()
        await self.run(stop)

    async def replay(self, events: Iterable[Event]) -> List[Optional[MatchOutcome]]:
        """Re-run recorded events in order."""

        outcomes = []
        for event in events:
            outcomes.append(await self.handle(event))
        return outcomes

    async def _worker(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.handle(event)
            finally:
                self._queue.task_done()


async def catch_up(storage: StoragePort, consumer: EventConsumer, model_version: str, limit: int = 0) -> int:
    """Enqueue active items that never had a committed pipeline run."""

    item_ids = storage.list_unprocessed_item_ids(model_version, utcnow())
    if limit > 0:
        item_ids = item_ids[:limit]
    for item_id in item_ids:
        await consumer.publish(ItemReady(item_id))
    LOGGER.info("Catch-up scan queued %s items", len(item_ids))
    return len(item_ids)
