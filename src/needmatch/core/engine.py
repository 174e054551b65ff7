"""Core matching pipeline.

This module is integration-agnostic. It only relies on ports for storage,
reasoning and delivery, enabling other transports or workers without
changes here.

The pipeline enforces a strict order:
1) Kill switch and subject checks
2) Candidate retrieval (plus operator force-includes)
3) Constraint filter, which must finish before any judging
4) Relevance judge
5) Ranker (previews stop here)
6) Throttle and dedup gate
7) Delivery dispatch
An empty ranker output goes to the zero-match responder instead of 6-7.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

from needmatch.core.config import EngineConfig
from needmatch.core.constraints import (
    KIND_CONSTRAINT,
    KIND_OVERRIDE,
    ConstraintFilter,
    FilterResult,
)
from needmatch.core.dispatcher import DeliveryDispatcher, DispatchReport
from needmatch.core.errors import ConstraintViolationAttempt, JudgeUnavailable, KillSwitchActive, StaleEmbedding
from needmatch.core.gate import ThrottleDedupGate
from needmatch.core.judge import FALLBACK_JUSTIFICATION, FORCED_JUSTIFICATION, RelevanceJudge
from needmatch.core.kill_switch import MATCHING, ensure_enabled
from needmatch.core.models import Candidate, GateDecision, OverrideAction, utcnow
from needmatch.core.ports import StoragePort
from needmatch.core.ranker import Ranker
from needmatch.core.retriever import CandidateRetriever
from needmatch.core.zero_match import ZeroMatchResponder, ZeroMatchResponse

LOGGER = logging.getLogger(__name__)

SUBJECT_ITEM = "item"
SUBJECT_RECIPIENT = "recipient"


class PipelineStatus(str, Enum):
    DISABLED = "disabled"
    COMPLETED = "completed"
    ZERO_MATCH = "zero_match"
    PREVIEW = "preview"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PreviewEntry:
    """Who would be notified and why, without any numeric score."""

    rank: int
    item_id: str
    recipient_id: str
    justification: str
    reasons: Tuple[str, ...]
    forced: bool = False


@dataclass
class MatchOutcome:
    subject_id: str
    status: PipelineStatus
    detail: str = ""
    dry_run: bool = False
    candidate_count: int = 0
    ranked: List[Candidate] = field(default_factory=list)
    notified: List[Candidate] = field(default_factory=list)
    dropped: List[Tuple[Candidate, GateDecision]] = field(default_factory=list)
    defects: List[ConstraintViolationAttempt] = field(default_factory=list)
    zero_match: Optional[ZeroMatchResponse] = None
    preview: List[PreviewEntry] = field(default_factory=list)
    delivery: Optional[DispatchReport] = None
    delivery_held: bool = False
    cancelled: bool = False


class MatchingEngine:
    """Orchestrates retrieval, filtering, judging, ranking, gating and delivery."""

    def __init__(
        self,
        storage: StoragePort,
        judge: RelevanceJudge,
        dispatcher: DeliveryDispatcher,
        config: EngineConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._judge = judge
        self._dispatcher = dispatcher
        self._config = config
        self._clock = clock
        self.retriever = CandidateRetriever(storage, config.retrieval)
        self.constraint_filter = ConstraintFilter(config.ranking.exclude_closed_capacity)
        self.ranker = Ranker(config.ranking)
        self.gate = ThrottleDedupGate(storage, config.throttle)
        self.responder = ZeroMatchResponder()

    async def process_item(self, item_id: str, dry_run: bool = False) -> MatchOutcome:
        """Run the pipeline for one ItemReady event."""

        now = self._clock()
        try:
            ensure_enabled(self._storage, MATCHING)
        except KillSwitchActive as exc:
            return MatchOutcome(item_id, PipelineStatus.DISABLED, detail=str(exc), dry_run=dry_run)

        item = self._storage.get_item(item_id)
        if item is None:
            LOGGER.warning("Item %s not found, skipping matching", item_id)
            return MatchOutcome(item_id, PipelineStatus.SKIPPED, detail="item not found", dry_run=dry_run)
        if not item.is_matchable(now):
            return MatchOutcome(item_id, PipelineStatus.SKIPPED, detail="item inactive or expired", dry_run=dry_run)
        try:
            self.retriever.check_current(item.id, item.embedding, item.model_version)
        except StaleEmbedding as exc:
            LOGGER.warning("Item %s has a stale embedding, skipping matching: %s", item_id, exc)
            return MatchOutcome(item_id, PipelineStatus.SKIPPED, detail="stale embedding", dry_run=dry_run)

        try:
            retrieved = self.retriever.for_item(item, now)
        except KillSwitchActive as exc:
            return MatchOutcome(item_id, PipelineStatus.DISABLED, detail=str(exc), dry_run=dry_run)

        overrides = self._storage.list_overrides(item_id=item.id)
        forced: List[Candidate] = []
        for override in overrides:
            if override.action != OverrideAction.INCLUDE:
                continue
            recipient = self._storage.get_recipient(override.recipient_id)
            if recipient is None or not recipient.is_matchable(now):
                LOGGER.info(
                    "Force-include of %s on item %s skipped: recipient unavailable",
                    override.recipient_id,
                    item.id,
                )
                continue
            forced.append(
                Candidate(
                    item=item,
                    recipient=recipient,
                    similarity=self.retriever.similarity(item, recipient),
                    forced=True,
                )
            )
        excluded = [(o.item_id, o.recipient_id) for o in overrides if o.action == OverrideAction.EXCLUDE]
        return await self._evaluate(SUBJECT_ITEM, item.id, forced + retrieved, excluded, now, dry_run)

    async def process_recipient(self, recipient_id: str, dry_run: bool = False) -> MatchOutcome:
        """Run the pipeline for one RecipientRegistered event, matching open items."""

        now = self._clock()
        try:
            ensure_enabled(self._storage, MATCHING)
        except KillSwitchActive as exc:
            return MatchOutcome(recipient_id, PipelineStatus.DISABLED, detail=str(exc), dry_run=dry_run)

        recipient = self._storage.get_recipient(recipient_id)
        if recipient is None:
            LOGGER.warning("Recipient %s not found, skipping matching", recipient_id)
            return MatchOutcome(recipient_id, PipelineStatus.SKIPPED, detail="recipient not found", dry_run=dry_run)
        if not recipient.is_matchable(now):
            return MatchOutcome(recipient_id, PipelineStatus.SKIPPED, detail="recipient inactive or paused", dry_run=dry_run)
        try:
            self.retriever.check_current(recipient.id, recipient.embedding, recipient.model_version)
        except StaleEmbedding as exc:
            LOGGER.warning("Recipient %s has a stale embedding, skipping matching: %s", recipient_id, exc)
            return MatchOutcome(recipient_id, PipelineStatus.SKIPPED, detail="stale embedding", dry_run=dry_run)

        try:
            retrieved = self.retriever.for_recipient(recipient, now)
        except KillSwitchActive as exc:
            return MatchOutcome(recipient_id, PipelineStatus.DISABLED, detail=str(exc), dry_run=dry_run)

        overrides = self._storage.list_overrides(recipient_id=recipient.id)
        forced: List[Candidate] = []
        for override in overrides:
            if override.action != OverrideAction.INCLUDE:
                continue
            item = self._storage.get_item(override.item_id)
            if item is None or not item.is_matchable(now):
                continue
            forced.append(
                Candidate(
                    item=item,
                    recipient=recipient,
                    similarity=self.retriever.similarity(item, recipient),
                    forced=True,
                )
            )
        excluded = [(o.item_id, o.recipient_id) for o in overrides if o.action == OverrideAction.EXCLUDE]
        return await self._evaluate(SUBJECT_RECIPIENT, recipient.id, forced + retrieved, excluded, now, dry_run)

    async def preview(self, item_id: str) -> MatchOutcome:
        """Dry run through the ranker: no gate, no delivery, no audit rows."""

        return await self.process_item(item_id, dry_run=True)

    async def _evaluate(
        self,
        subject_kind: str,
        subject_id: str,
        candidates: List[Candidate],
        excluded_pairs: Iterable[tuple],
        now: datetime,
        dry_run: bool,
    ) -> MatchOutcome:
        outcome = MatchOutcome(subject_id, PipelineStatus.COMPLETED, dry_run=dry_run)

        # Constraint filtering must complete before the judge sees anything.
        filtered = self.constraint_filter.apply(candidates, excluded_pairs)
        outcome.candidate_count = filtered.input_count
        if not dry_run:
            self._audit_filter(filtered, now)

        forced = [replace(c, justification=FORCED_JUSTIFICATION) for c in filtered.survivors if c.forced]
        to_judge = [c for c in filtered.survivors if not c.forced]
        if not dry_run:
            for candidate in forced:
                self._audit(candidate, "override", "override_include", "operator force-include", now)

        passed, rejected_count, judge_unavailable = await self._judge_candidates(to_judge, now, dry_run)

        ranked = self.ranker.rank(forced + passed, now)
        outcome.ranked = ranked
        if not ranked:
            outcome.status = PipelineStatus.ZERO_MATCH
            outcome.zero_match = self.responder.respond(
                subject_id,
                outcome.candidate_count,
                filtered.tally,
                judge_rejected=rejected_count,
                judge_unavailable=judge_unavailable,
            )
            LOGGER.info("No safe match for %s (%s)", subject_id, outcome.zero_match.reason)
            if not dry_run:
                self._record_run(subject_kind, subject_id, outcome, now)
            return outcome

        if dry_run:
            outcome.status = PipelineStatus.PREVIEW
            outcome.preview = [
                PreviewEntry(
                    rank=index,
                    item_id=c.item.id,
                    recipient_id=c.recipient.id,
                    justification=c.justification or FALLBACK_JUSTIFICATION,
                    reasons=tuple(self.ranker.describe(c, now)),
                    forced=c.forced,
                )
                for index, c in enumerate(ranked, start=1)
            ]
            return outcome

        gate_outcome = self.gate.admit(ranked, now)
        outcome.notified = gate_outcome.accepted
        outcome.dropped = gate_outcome.dropped
        outcome.defects = gate_outcome.defects
        outcome.cancelled = gate_outcome.cancelled
        for candidate, decision in gate_outcome.dropped:
            self._audit(candidate, "gate", decision.value, "", now)
        for defect in gate_outcome.defects:
            self._storage.record_audit(
                defect.item_id, defect.recipient_id, "gate", "constraint_defect", ", ".join(defect.violated), now
            )
        if gate_outcome.cancelled:
            outcome.status = PipelineStatus.DISABLED
            outcome.detail = "cancelled by kill switch at gate"

        if gate_outcome.accepted:
            try:
                outcome.delivery = await self._dispatcher.dispatch(gate_outcome.accepted)
            except KillSwitchActive:
                LOGGER.warning("Delivery disabled; %s notifications held", len(gate_outcome.accepted))
                outcome.delivery_held = True

        LOGGER.info(
            "Matching complete for %s: %s candidates, %s notified",
            subject_id,
            outcome.candidate_count,
            len(gate_outcome.accepted),
        )
        self._record_run(subject_kind, subject_id, outcome, now)
        return outcome

    async def _judge_candidates(
        self, to_judge: List[Candidate], now: datetime, dry_run: bool
    ) -> Tuple[List[Candidate], int, bool]:
        """Return (passed, rejected_count, judge_unavailable) per the failure mode."""

        if not to_judge:
            return [], 0, False
        fail_open = self._config.judge.failure_mode == "fail_open"
        try:
            result = await self._judge.judge(to_judge)
        except JudgeUnavailable as exc:
            if fail_open:
                LOGGER.warning("Relevance judge unavailable, failing open: %s", exc)
                if not dry_run:
                    for candidate in to_judge:
                        self._audit(candidate, "judge", "judge_fail_open", str(exc), now)
                return [replace(c, justification=FALLBACK_JUSTIFICATION) for c in to_judge], 0, False
            LOGGER.warning("Relevance judge unavailable, failing closed: %s", exc)
            return [], 0, True

        passed = list(result.passed)
        for candidate in result.unresolved:
            if fail_open:
                passed.append(replace(candidate, justification=FALLBACK_JUSTIFICATION))
            elif not dry_run:
                self._audit(candidate, "judge", "judge_no_verdict", "", now)
        if not dry_run:
            for candidate in result.rejected:
                self._audit(candidate, "judge", "judge_rejected", candidate.justification or "", now)
        return passed, len(result.rejected), False

    def _audit_filter(self, filtered: FilterResult, now: datetime) -> None:
        for exclusion in filtered.exclusions:
            if exclusion.kind == KIND_CONSTRAINT:
                decision = "constraint_excluded"
            elif exclusion.kind == KIND_OVERRIDE:
                decision = "override_excluded"
            else:
                decision = "policy_excluded"
            self._audit(exclusion.candidate, "filter", decision, ", ".join(exclusion.reasons), now)

    def _audit(self, candidate: Candidate, stage: str, decision: str, detail: str, now: datetime) -> None:
        self._storage.record_audit(candidate.item.id, candidate.recipient.id, stage, decision, detail, now)

    def _record_run(self, subject_kind: str, subject_id: str, outcome: MatchOutcome, now: datetime) -> None:
        self._storage.record_run(
            subject_kind,
            subject_id,
            outcome.status.value,
            outcome.candidate_count,
            len(outcome.notified),
            now,
        )
