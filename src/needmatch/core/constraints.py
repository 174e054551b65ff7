"""Hard-constraint filtering (core domain).

This stage is authoritative: a candidate excluded here never reaches the
judge, the ranker or the gate, whatever its similarity. Operator overrides
are applied here as well, but a forced include still has to satisfy every
hard constraint on the item.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List

from needmatch.core.models import Candidate, CapacityStatus, HardConstraint, Item, Recipient

LOGGER = logging.getLogger(__name__)

CAPACITY_CLOSED = "capacity_closed"
OVERRIDE_EXCLUDE = "override_exclude"

KIND_CONSTRAINT = "constraint"
KIND_POLICY = "policy"
KIND_OVERRIDE = "override"


@dataclass(frozen=True)
class Exclusion:
    """One candidate removed by the filter, with every reason that applied."""

    candidate: Candidate
    reasons: tuple
    kind: str


@dataclass
class FilterResult:
    survivors: List[Candidate] = field(default_factory=list)
    exclusions: List[Exclusion] = field(default_factory=list)
    tally: Counter = field(default_factory=Counter)

    @property
    def input_count(self) -> int:
        return len(self.survivors) + len(self.exclusions)


def parse_constraints(values: Iterable[str]) -> frozenset:
    """Normalize constraint names from config or storage.

    Unknown names are rejected rather than ignored so a typo can never
    silently disable an exclusion.
    """

    parsed = set()
    for value in values:
        name = str(value).strip().lower()
        if not name:
            continue
        try:
            parsed.add(HardConstraint(name))
        except ValueError as exc:
            raise ValueError(f"Unknown hard constraint: {value}") from exc
    return frozenset(parsed)


def violated_constraints(item: Item, recipient: Recipient) -> List[str]:
    """Return the item's true flags that the recipient's profile cannot satisfy."""

    hits = set(item.hard_constraints) & set(recipient.incompatible_constraints)
    return sorted(flag.value for flag in hits)


class ConstraintFilter:
    """Applies hard constraints, capacity policy and exclude overrides."""

    def __init__(self, exclude_closed_capacity: bool = True) -> None:
        self._exclude_closed_capacity = exclude_closed_capacity

    def apply(self, candidates: Iterable[Candidate], excluded_pairs: Iterable[tuple] = ()) -> FilterResult:
        """Split candidates into survivors and exclusions.

        Matching logic:
        - Every hard flag true on the item is checked (AND across flags).
        - Closed items exclude everyone when the capacity policy is on.
        - Operator exclusions apply last and are reported separately.
        """

        blocked = set(excluded_pairs)
        result = FilterResult()
        seen: set = set()

        for candidate in candidates:
            if candidate.pair in seen:
                continue
            seen.add(candidate.pair)

            violated = violated_constraints(candidate.item, candidate.recipient)
            if violated:
                LOGGER.info(
                    "Constraint exclusion: recipient %s on item %s (%s)",
                    candidate.recipient.id,
                    candidate.item.id,
                    ", ".join(violated),
                )
                result.exclusions.append(Exclusion(candidate, tuple(violated), KIND_CONSTRAINT))
                result.tally.update(violated)
                continue

            if self._exclude_closed_capacity and candidate.item.capacity == CapacityStatus.CLOSED:
                result.exclusions.append(Exclusion(candidate, (CAPACITY_CLOSED,), KIND_POLICY))
                result.tally[CAPACITY_CLOSED] += 1
                continue

            if candidate.pair in blocked:
                LOGGER.info(
                    "Operator exclusion: recipient %s on item %s",
                    candidate.recipient.id,
                    candidate.item.id,
                )
                result.exclusions.append(Exclusion(candidate, (OVERRIDE_EXCLUDE,), KIND_OVERRIDE))
                result.tally[OVERRIDE_EXCLUDE] += 1
                continue

            result.survivors.append(candidate)

        return result
