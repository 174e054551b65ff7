"""Batch refresh of missing or stale embeddings.

Entities embedded with another model version are excluded from retrieval
until this job rewrites their vectors with the current version.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Sequence, Tuple

from needmatch.core.config import ReembedConfig
from needmatch.core.models import utcnow
from needmatch.core.ports import EmbedderPort, EmbeddingStorePort

LOGGER = logging.getLogger(__name__)


@dataclass
class ReembedReport:
    items_updated: int = 0
    recipients_updated: int = 0
    failed: int = 0


class Reembedder:
    def __init__(
        self,
        storage: EmbeddingStorePort,
        embedder: EmbedderPort,
        config: ReembedConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._embedder = embedder
        self._config = config
        self._sleep = sleep

    async def run(self) -> ReembedReport:
        version = self._embedder.model_version
        report = ReembedReport()

        items = self._storage.list_stale_items(version)
        recipients = self._storage.list_stale_recipients(version)
        LOGGER.info(
            "Re-embedding %s items and %s recipients to %s", len(items), len(recipients), version
        )

        updated, failed = await self._refresh(
            [(item.id, item.embedding_text()) for item in items], self._storage.set_item_embedding
        )
        report.items_updated = updated
        report.failed += failed

        updated, failed = await self._refresh(
            [(r.id, r.profile) for r in recipients], self._storage.set_recipient_embedding
        )
        report.recipients_updated = updated
        report.failed += failed

        LOGGER.info(
            "Re-embedding complete: items=%s, recipients=%s, failed=%s",
            report.items_updated,
            report.recipients_updated,
            report.failed,
        )
        return report

    async def _refresh(self, entries: List[Tuple[str, str]], save) -> Tuple[int, int]:
        updated = 0
        failed = 0
        batch_size = max(1, self._config.batch_size)
        for start in range(0, len(entries), batch_size):
            batch = entries[start : start + batch_size]
            try:
                vectors = await self._embed_with_retry([text for _, text in batch])
            except Exception:
                LOGGER.exception("Embedding batch failed for %s entities", len(batch))
                failed += len(batch)
                continue

            now = utcnow()
            for (entity_id, _), vector in zip(batch, vectors):
                if not self._valid(entity_id, vector):
                    failed += 1
                    continue
                save(entity_id, vector, self._embedder.model_version, now)
                updated += 1

            if start + batch_size < len(entries):
                await self._sleep(self._config.rate_limit_seconds)
        return updated, failed

    async def _embed_with_retry(self, texts: Sequence[str]) -> list[list[float]]:
        retries = 0
        while True:
            try:
                vectors = await self._embedder.embed(texts)
                if len(vectors) != len(texts):
                    raise RuntimeError(f"Embedder returned {len(vectors)} vectors for {len(texts)} texts")
                return vectors
            except Exception as exc:
                if retries >= self._config.max_retries:
                    raise
                retries += 1
                LOGGER.warning(
                    "Embedding request failed (retry %s/%s): %s", retries, self._config.max_retries, exc
                )
                await self._sleep(self._config.retry_delay_seconds * retries)

    def _valid(self, entity_id: str, vector: Sequence[float]) -> bool:
        expected = self._config.expected_dimension
        if not vector or (expected and len(vector) != expected):
            LOGGER.error(
                "Invalid embedding dimension for %s: expected %s, got %s", entity_id, expected, len(vector)
            )
            return False
        return True
