"""Candidate retrieval by vector similarity (core domain).

Retrieval is version-aware: a subject whose embedding is missing or was made
by another model version yields no candidates, and candidates with a foreign
model version are never scored against the subject.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from needmatch.core.config import RetrievalConfig
from needmatch.core.errors import StaleEmbedding
from needmatch.core.kill_switch import MATCHING, ensure_enabled
from needmatch.core.models import Candidate, Item, Recipient
from needmatch.core.ports import StoragePort
from needmatch.core.vectors import cosine_similarities, haversine_km, top_k_indices

LOGGER = logging.getLogger(__name__)


class CandidateRetriever:
    """Bounded nearest-neighbour search between items and recipients."""

    def __init__(self, storage: StoragePort, config: RetrievalConfig) -> None:
        self._storage = storage
        self._config = config

    @property
    def model_version(self) -> str:
        return self._config.embedding_model_version

    def check_current(self, entity_id: str, embedding, model_version: Optional[str]) -> None:
        """Raise StaleEmbedding unless the embedding exists at the accepted version."""

        if not embedding or model_version != self.model_version:
            raise StaleEmbedding(entity_id, model_version, self.model_version)

    def for_item(self, item: Item, now: datetime) -> list[Candidate]:
        """Return up to top_k recipients for ``item``, best first."""

        ensure_enabled(self._storage, MATCHING)
        try:
            self.check_current(item.id, item.embedding, item.model_version)
        except StaleEmbedding as exc:
            LOGGER.warning("Retrieval skipped: %s", exc)
            return []
        if not item.is_matchable(now):
            return []

        recipients = [
            r
            for r in self._storage.list_matchable_recipients(self.model_version, now)
            if r.is_matchable(now) and self._same_space(item.embedding, r.embedding, r.model_version)
        ]
        recipients = [
            r for r in recipients if self._within_radius(item.latitude, item.longitude, r.latitude, r.longitude)
        ]
        scored = self._nearest(item.embedding, [r.embedding for r in recipients], [r.id for r in recipients])
        candidates = [
            Candidate(item=item, recipient=recipients[idx], similarity=score) for idx, score in scored
        ]
        LOGGER.debug("Retrieved %s recipients for item %s", len(candidates), item.id)
        return candidates

    def for_recipient(self, recipient: Recipient, now: datetime) -> list[Candidate]:
        """Return up to top_k items for a newly registered ``recipient``."""

        ensure_enabled(self._storage, MATCHING)
        try:
            self.check_current(recipient.id, recipient.embedding, recipient.model_version)
        except StaleEmbedding as exc:
            LOGGER.warning("Retrieval skipped: %s", exc)
            return []
        if not recipient.is_matchable(now):
            return []

        items = [
            i
            for i in self._storage.list_matchable_items(self.model_version, now)
            if i.is_matchable(now) and self._same_space(recipient.embedding, i.embedding, i.model_version)
        ]
        items = [
            i
            for i in items
            if self._within_radius(recipient.latitude, recipient.longitude, i.latitude, i.longitude)
        ]
        scored = self._nearest(recipient.embedding, [i.embedding for i in items], [i.id for i in items])
        candidates = [Candidate(item=items[idx], recipient=recipient, similarity=score) for idx, score in scored]
        LOGGER.debug("Retrieved %s items for recipient %s", len(candidates), recipient.id)
        return candidates

    def similarity(self, item: Item, recipient: Recipient) -> Optional[float]:
        """Similarity for a single pair, or None when the pair must not be compared."""

        if item.model_version != self.model_version or not item.embedding:
            return None
        if not self._same_space(item.embedding, recipient.embedding, recipient.model_version):
            return None
        scores = cosine_similarities(item.embedding, np.asarray([recipient.embedding], dtype=np.float32))
        return float(scores[0])

    def _same_space(self, subject, other, other_version: Optional[str]) -> bool:
        if other_version != self.model_version or not other:
            return False
        # A dimension mismatch under the same version label is still a foreign space.
        return len(other) == len(subject)

    def _within_radius(
        self,
        lat1: Optional[float],
        lng1: Optional[float],
        lat2: Optional[float],
        lng2: Optional[float],
    ) -> bool:
        radius = self._config.radius_km
        if radius is None or None in (lat1, lng1, lat2, lng2):
            return True
        return haversine_km(lat1, lng1, lat2, lng2) <= radius

    def _nearest(
        self,
        query: Sequence[float],
        vectors: list[Sequence[float]],
        ids: list[str],
    ) -> list[tuple[int, float]]:
        if not vectors:
            return []
        matrix = np.asarray(vectors, dtype=np.float32)
        scores = cosine_similarities(query, matrix)
        picked = top_k_indices(scores, self._config.top_k, ids)
        return [
            (idx, float(scores[idx]))
            for idx in picked
            if float(scores[idx]) >= self._config.min_similarity
        ]
