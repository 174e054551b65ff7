"""Throttle and dedup gate (core domain).

Each ranked candidate goes through one atomic storage operation that both
inserts the notification row and bumps the recipient's window counter, or
does neither. Candidates that are throttled or already notified are dropped
quietly; that is the normal steady state, not an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Tuple

from needmatch.core.config import ThrottleConfig
from needmatch.core.constraints import violated_constraints
from needmatch.core.errors import ConstraintViolationAttempt, KillSwitchActive
from needmatch.core.judge import FALLBACK_JUSTIFICATION
from needmatch.core.kill_switch import MATCHING, ensure_enabled
from needmatch.core.models import Candidate, GateDecision
from needmatch.core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


@dataclass
class GateOutcome:
    accepted: List[Candidate] = field(default_factory=list)
    dropped: List[Tuple[Candidate, GateDecision]] = field(default_factory=list)
    defects: List[ConstraintViolationAttempt] = field(default_factory=list)
    cancelled: bool = False


class ThrottleDedupGate:
    """Commits notification rows under the per-recipient cap."""

    def __init__(self, storage: StoragePort, config: ThrottleConfig) -> None:
        self._storage = storage
        self._config = config

    def admit(self, ranked: Iterable[Candidate], now: datetime) -> GateOutcome:
        outcome = GateOutcome()
        for candidate in ranked:
            # Kill switch is honored up to the gate; rows committed so far stay.
            try:
                ensure_enabled(self._storage, MATCHING)
            except KillSwitchActive:
                LOGGER.warning("Gate stopped by kill switch for item %s", candidate.item.id)
                outcome.cancelled = True
                break

            # Checked on the ranked snapshot here, then again by storage under
            # the commit lock against the current rows.
            try:
                self._verify_constraints(candidate)
                decision = self._storage.try_record_notification(
                    item_id=candidate.item.id,
                    recipient_id=candidate.recipient.id,
                    justification=candidate.justification or FALLBACK_JUSTIFICATION,
                    forced=candidate.forced,
                    now=now,
                    cap=self._config.cap_per_window,
                    window=self._config.window,
                )
            except ConstraintViolationAttempt as exc:
                LOGGER.error("Constraint defect caught at gate: %s", exc)
                outcome.defects.append(exc)
                continue
            if decision == GateDecision.ACCEPTED:
                outcome.accepted.append(candidate)
            else:
                LOGGER.debug(
                    "Gate dropped recipient %s for item %s (%s)",
                    candidate.recipient.id,
                    candidate.item.id,
                    decision.value,
                )
                outcome.dropped.append((candidate, decision))
        return outcome

    @staticmethod
    def _verify_constraints(candidate: Candidate) -> None:
        violated = violated_constraints(candidate.item, candidate.recipient)
        if violated:
            raise ConstraintViolationAttempt(candidate.item.id, candidate.recipient.id, violated, "gate")
