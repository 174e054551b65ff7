"""Structured "no safe match" responses (core domain).

A zero-match is a designed outcome, not a fault: it tells the operator how
many candidates were considered, what removed them, and what to try next.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List, Mapping

from needmatch.core.constraints import CAPACITY_CLOSED, OVERRIDE_EXCLUDE

NO_CANDIDATES = "no_candidates"
CONSTRAINTS_EXCLUDED_ALL = "constraints_excluded_all"
OVERRIDES_EXCLUDED_ALL = "overrides_excluded_all"
JUDGE_REJECTED_ALL = "judge_rejected_all"
JUDGE_UNAVAILABLE = "judge_unavailable"

WIDEN_RETRIEVAL = "widen_retrieval"
ESCALATE_TO_HUMAN = "escalate_to_human"
RELAX_CONSTRAINT = "relax_constraint"
REVIEW_OVERRIDES = "review_overrides"
UPDATE_CAPACITY = "update_capacity"


@dataclass(frozen=True)
class Suggestion:
    action: str
    detail: str
    target: str = ""

    @property
    def code(self) -> str:
        return f"{self.action}:{self.target}" if self.target else self.action


@dataclass(frozen=True)
class ZeroMatchResponse:
    item_id: str
    reason: str
    candidate_count: int
    exclusions: Mapping[str, int] = field(default_factory=dict)
    suggestions: List[Suggestion] = field(default_factory=list)

    def render(self) -> str:
        lines = [
            f"No safe match for {self.item_id}",
            f"Reason: {self.reason.replace('_', ' ')}",
            f"Candidates considered: {self.candidate_count}",
        ]
        if self.exclusions:
            lines.append("Excluded by:")
            for name, count in sorted(self.exclusions.items(), key=lambda kv: (-kv[1], kv[0])):
                lines.append(f"  - {name}: {count}")
        lines.append("Next steps:")
        for suggestion in self.suggestions:
            lines.append(f"  - {suggestion.detail}")
        return "\n".join(lines)


class ZeroMatchResponder:
    """Builds a zero-match response from what the pipeline stages observed."""

    def respond(
        self,
        item_id: str,
        candidate_count: int,
        tally: Counter,
        judge_rejected: int = 0,
        judge_unavailable: bool = False,
    ) -> ZeroMatchResponse:
        reason = self._reason(candidate_count, tally, judge_rejected, judge_unavailable)
        suggestions: List[Suggestion] = []

        if candidate_count == 0:
            suggestions.append(
                Suggestion(WIDEN_RETRIEVAL, "Widen retrieval: raise top_k or the search radius.")
            )
        for name, _count in sorted(tally.items(), key=lambda kv: (-kv[1], kv[0])):
            if name == OVERRIDE_EXCLUDE:
                suggestions.append(
                    Suggestion(REVIEW_OVERRIDES, "Review operator exclusions for this item.")
                )
            elif name == CAPACITY_CLOSED:
                suggestions.append(
                    Suggestion(UPDATE_CAPACITY, "Confirm whether the item is still closed to new help.")
                )
            else:
                suggestions.append(
                    Suggestion(
                        RELAX_CONSTRAINT,
                        f"Check whether '{name}' is really required for this item.",
                        target=name,
                    )
                )
        # Escalation is always offered so every response has a human path.
        suggestions.append(
            Suggestion(ESCALATE_TO_HUMAN, "Escalate to a human coordinator for manual outreach.")
        )

        return ZeroMatchResponse(
            item_id=item_id,
            reason=reason,
            candidate_count=candidate_count,
            exclusions=dict(tally),
            suggestions=suggestions,
        )

    @staticmethod
    def _reason(candidate_count: int, tally: Counter, judge_rejected: int, judge_unavailable: bool) -> str:
        if judge_unavailable:
            return JUDGE_UNAVAILABLE
        if candidate_count == 0:
            return NO_CANDIDATES
        if judge_rejected:
            return JUDGE_REJECTED_ALL
        if tally and set(tally) == {OVERRIDE_EXCLUDE}:
            return OVERRIDES_EXCLUDED_ALL
        return CONSTRAINTS_EXCLUDED_ALL
