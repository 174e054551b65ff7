"""Deterministic candidate ordering (core domain)."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from needmatch.core.config import RankingConfig
from needmatch.core.models import Candidate, CapacityStatus, Item, VerificationTier

TIER_ORDER = {
    VerificationTier.VERIFIED: 0,
    VerificationTier.UNVERIFIED: 1,
    VerificationTier.COMMUNITY_REPORTED: 2,
}

CAPACITY_ORDER = {
    CapacityStatus.ACCEPTING: 0,
    CapacityStatus.LIMITED: 1,
    CapacityStatus.UNKNOWN: 2,
    CapacityStatus.CLOSED: 3,
}


def effective_tier(item: Item, now: datetime, ttl_days: Optional[int]) -> VerificationTier:
    """Verification tier, demoting verified items whose check is older than the TTL."""

    if item.verification != VerificationTier.VERIFIED or ttl_days is None:
        return item.verification
    if item.last_verified_at is None or item.last_verified_at < now - timedelta(days=ttl_days):
        return VerificationTier.UNVERIFIED
    return item.verification


class Ranker:
    """Orders judged candidates and truncates to the per-item fan-out.

    Sort key, highest priority first:
    1) operator force-include
    2) constraint compliance (always true here, already filtered)
    3) verification tier
    4) capacity
    5) similarity, as a tie-break only
    6) item id then recipient id, so equal candidates always sort the same way
    """

    def __init__(self, config: RankingConfig) -> None:
        self._config = config

    def rank(self, candidates: Iterable[Candidate], now: datetime) -> List[Candidate]:
        ordered = sorted(candidates, key=lambda c: self._sort_key(c, now))
        return ordered[: max(0, self._config.max_fanout_per_item)]

    def describe(self, candidate: Candidate, now: datetime) -> List[str]:
        """Human-readable ranking reasons for previews; no scores."""

        reasons = []
        if candidate.forced:
            reasons.append("operator include")
        reasons.append(f"tier: {effective_tier(candidate.item, now, self._config.verification_ttl_days).value}")
        reasons.append(f"capacity: {candidate.item.capacity.value}")
        return reasons

    def _sort_key(self, candidate: Candidate, now: datetime) -> tuple:
        tier = effective_tier(candidate.item, now, self._config.verification_ttl_days)
        similarity = candidate.similarity if candidate.similarity is not None else float("-inf")
        return (
            0 if candidate.forced else 1,
            TIER_ORDER[tier],
            CAPACITY_ORDER[candidate.item.capacity],
            -similarity,
            candidate.item.id,
            candidate.recipient.id,
        )
