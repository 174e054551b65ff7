"""Relevance judging (core domain).

The judge is secondary to the constraint filter: it only ever sees
candidates that already satisfy every hard constraint, and it can only
remove candidates, never add them back.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Protocol, Sequence

from needmatch.core.config import JudgeConfig
from needmatch.core.errors import JudgeUnavailable
from needmatch.core.models import Candidate, Verdict
from needmatch.core.ports import ReasoningPort

LOGGER = logging.getLogger(__name__)

FALLBACK_JUSTIFICATION = "Your profile looks like a fit for this request."
FORCED_JUSTIFICATION = "Added by an operator."

# Similarity bands used by the offline judge.
SIMILARITY_THRESHOLD_LOW = 0.4
SIMILARITY_THRESHOLD_MEDIUM = 0.6
SIMILARITY_THRESHOLD_HIGH = 0.8


@dataclass
class JudgeResult:
    """Outcome of judging one batch of constraint-surviving candidates."""

    passed: List[Candidate] = field(default_factory=list)
    rejected: List[Candidate] = field(default_factory=list)
    unresolved: List[Candidate] = field(default_factory=list)


class RelevanceJudge(Protocol):
    async def judge(self, candidates: Sequence[Candidate]) -> JudgeResult:
        ...


class PassThroughJudge:
    """Accepts every candidate. Used in tests and when no reasoning service is wired."""

    def __init__(self, justification: str = FALLBACK_JUSTIFICATION) -> None:
        self._justification = justification

    async def judge(self, candidates: Sequence[Candidate]) -> JudgeResult:
        return JudgeResult(passed=[replace(c, justification=self._justification) for c in candidates])


class SimilarityJudge:
    """Offline judge based on similarity bands; never calls out.

    The bias mode picks the lowest band a candidate must reach: generous
    accepts from the low band, balanced from the medium band, strict only
    from the high band. Justifications never include the score itself.
    """

    def __init__(self, bias_mode: str = "generous") -> None:
        self._floor = {
            "generous": SIMILARITY_THRESHOLD_LOW,
            "balanced": SIMILARITY_THRESHOLD_MEDIUM,
            "strict": SIMILARITY_THRESHOLD_HIGH,
        }[bias_mode]

    async def judge(self, candidates: Sequence[Candidate]) -> JudgeResult:
        result = JudgeResult()
        for candidate in candidates:
            score = candidate.similarity
            if score is None:
                result.unresolved.append(candidate)
            elif score < self._floor:
                result.rejected.append(candidate)
            elif score >= SIMILARITY_THRESHOLD_HIGH:
                result.passed.append(
                    replace(candidate, justification="Strong match for your interests and skills.")
                )
            elif score >= SIMILARITY_THRESHOLD_MEDIUM:
                result.passed.append(replace(candidate, justification="Your profile matches this opportunity."))
            else:
                result.passed.append(replace(candidate, justification="This may be relevant to you."))
        return result


class ReasoningJudge:
    """Judge backed by the external reasoning collaborator.

    Candidates are grouped per item and sent in batches. A process-wide
    semaphore bounds concurrent calls, and each call gets a short timeout so
    one slow item cannot hold the pool.
    """

    def __init__(
        self,
        reasoning: ReasoningPort,
        config: JudgeConfig,
        semaphore: Optional[asyncio.Semaphore] = None,
    ) -> None:
        self._reasoning = reasoning
        self._config = config
        self._semaphore = semaphore or asyncio.Semaphore(max(1, config.max_concurrency))

    async def judge(self, candidates: Sequence[Candidate]) -> JudgeResult:
        batches = self._batches(candidates)
        if not batches:
            return JudgeResult()
        tasks = [asyncio.ensure_future(self._evaluate(batch)) for batch in batches]
        try:
            verdict_sets = await asyncio.gather(*tasks)
        except BaseException:
            # One failed batch settles the item; stop the rest so they release
            # their semaphore slots.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        result = JudgeResult()
        for batch, verdicts in zip(batches, verdict_sets):
            by_id: Dict[str, Verdict] = {}
            for verdict in verdicts:
                by_id.setdefault(verdict.candidate_id, verdict)
            for candidate in batch:
                verdict = by_id.get(self._candidate_id(candidate))
                if verdict is None:
                    result.unresolved.append(candidate)
                elif verdict.passed:
                    text = verdict.justification.strip() or FALLBACK_JUSTIFICATION
                    result.passed.append(replace(candidate, justification=text))
                else:
                    result.rejected.append(replace(candidate, justification=verdict.justification))
        if result.unresolved:
            LOGGER.warning("Reasoning service returned no verdict for %s candidates", len(result.unresolved))
        return result

    async def _evaluate(self, batch: List[Candidate]) -> List[Verdict]:
        item = batch[0].item
        profiles = [(self._candidate_id(c), c.recipient.profile) for c in batch]
        async with self._semaphore:
            try:
                verdicts = await asyncio.wait_for(
                    self._reasoning.evaluate(item.embedding_text(), profiles, self._config.bias_mode),
                    timeout=self._config.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise JudgeUnavailable(f"reasoning timed out after {self._config.timeout_seconds}s") from exc
            except JudgeUnavailable:
                raise
            except Exception as exc:
                raise JudgeUnavailable(f"reasoning failed: {exc}") from exc
        if verdicts is None:
            raise JudgeUnavailable("reasoning returned no output")
        return list(verdicts)

    def _batches(self, candidates: Sequence[Candidate]) -> List[List[Candidate]]:
        per_item: Dict[str, List[Candidate]] = {}
        for candidate in candidates:
            per_item.setdefault(candidate.item.id, []).append(candidate)
        size = max(1, self._config.batch_size)
        batches: List[List[Candidate]] = []
        for group in per_item.values():
            batches.extend(group[start : start + size] for start in range(0, len(group), size))
        return batches

    @staticmethod
    def _candidate_id(candidate: Candidate) -> str:
        return candidate.recipient.id
