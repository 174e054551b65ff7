from __future__ import annotations

import asyncio
import re

import pytest

from factories import FakeReasoning, make_item, make_recipient
from needmatch.core.config import JudgeConfig
from needmatch.core.errors import JudgeUnavailable
from needmatch.core.judge import FALLBACK_JUSTIFICATION, PassThroughJudge, ReasoningJudge, SimilarityJudge
from needmatch.core.models import Candidate, Verdict


def _candidates(count: int, item_id: str = "item-1"):
    item = make_item(item_id)
    return [Candidate(item, make_recipient(f"r{n}"), similarity=0.9) for n in range(count)]


def test_reasoning_judge_batches_per_item() -> None:
    reasoning = FakeReasoning()
    judge = ReasoningJudge(reasoning, JudgeConfig(batch_size=2))
    candidates = _candidates(5) + _candidates(1, item_id="item-2")

    result = asyncio.run(judge.judge(candidates))

    assert len(result.passed) == 6
    assert sorted(len(call) for call in reasoning.calls) == [1, 1, 2, 2]


def test_missing_verdicts_are_unresolved() -> None:
    judge = ReasoningJudge(FakeReasoning(omit=["r1"]), JudgeConfig())

    result = asyncio.run(judge.judge(_candidates(3)))

    assert [c.recipient.id for c in result.passed] == ["r0", "r2"]
    assert [c.recipient.id for c in result.unresolved] == ["r1"]


def test_verdicts_for_unknown_ids_are_ignored() -> None:
    class ExtraVerdicts:
        async def evaluate(self, item_text, candidate_profiles, bias_mode):
            verdicts = [Verdict(cid, True, "") for cid, _ in candidate_profiles]
            return verdicts + [Verdict("stranger", True, "hi")]

    result = asyncio.run(ReasoningJudge(ExtraVerdicts(), JudgeConfig()).judge(_candidates(2)))

    assert [c.recipient.id for c in result.passed] == ["r0", "r1"]
    assert all(c.justification == FALLBACK_JUSTIFICATION for c in result.passed)


def test_timeout_raises_judge_unavailable() -> None:
    judge = ReasoningJudge(FakeReasoning(delay=1.0), JudgeConfig(timeout_seconds=0.01))

    with pytest.raises(JudgeUnavailable):
        asyncio.run(judge.judge(_candidates(1)))


def test_any_failed_batch_fails_the_item() -> None:
    class FlakyReasoning:
        async def evaluate(self, item_text, candidate_profiles, bias_mode):
            if any(cid == "r3" for cid, _ in candidate_profiles):
                raise ValueError("malformed output")
            return [Verdict(cid, True, "ok") for cid, _ in candidate_profiles]

    judge = ReasoningJudge(FlakyReasoning(), JudgeConfig(batch_size=2))

    with pytest.raises(JudgeUnavailable):
        asyncio.run(judge.judge(_candidates(4)))


def test_failed_batch_cancels_sibling_calls() -> None:
    class OneFastFailure:
        def __init__(self) -> None:
            self.active = 0
            self.finished: list[str] = []

        async def evaluate(self, item_text, candidate_profiles, bias_mode):
            cid = candidate_profiles[0][0]
            if cid == "r0":
                raise RuntimeError("model down")
            self.active += 1
            try:
                await asyncio.sleep(0.3)
            finally:
                self.active -= 1
            self.finished.append(cid)
            return [Verdict(cid, True, "ok")]

    reasoning = OneFastFailure()

    async def scenario():
        judge = ReasoningJudge(reasoning, JudgeConfig(batch_size=1, max_concurrency=4))
        with pytest.raises(JudgeUnavailable):
            await judge.judge(_candidates(3))
        return reasoning.active

    assert asyncio.run(scenario()) == 0
    assert reasoning.finished == []


def test_concurrency_is_bounded() -> None:
    async def scenario():
        reasoning = FakeReasoning(delay=0.01)
        judge = ReasoningJudge(reasoning, JudgeConfig(batch_size=1, max_concurrency=2))
        await judge.judge(_candidates(6))
        return reasoning

    reasoning = asyncio.run(scenario())

    assert reasoning.max_active == 2
    assert len(reasoning.calls) == 6


def test_bias_mode_is_passed_to_reasoning() -> None:
    seen = []

    class Recording:
        async def evaluate(self, item_text, candidate_profiles, bias_mode):
            seen.append(bias_mode)
            return []

    asyncio.run(ReasoningJudge(Recording(), JudgeConfig(bias_mode="strict")).judge(_candidates(1)))

    assert seen == ["strict"]


@pytest.mark.parametrize(
    "bias_mode,score,passed",
    [
        ("generous", 0.45, True),
        ("generous", 0.35, False),
        ("balanced", 0.45, False),
        ("balanced", 0.65, True),
        ("strict", 0.75, False),
        ("strict", 0.85, True),
    ],
)
def test_similarity_judge_bands(bias_mode, score, passed) -> None:
    candidate = Candidate(make_item(), make_recipient("r0"), similarity=score)

    result = asyncio.run(SimilarityJudge(bias_mode).judge([candidate]))

    assert bool(result.passed) is passed
    for c in result.passed:
        assert not re.search(r"\d|%", c.justification)


def test_similarity_judge_leaves_unscored_candidates_unresolved() -> None:
    candidate = Candidate(make_item(), make_recipient("r0"), similarity=None)

    result = asyncio.run(SimilarityJudge().judge([candidate]))

    assert result.unresolved == [candidate]


def test_invalid_judge_modes_are_rejected() -> None:
    with pytest.raises(ValueError):
        JudgeConfig(failure_mode="maybe")
    with pytest.raises(ValueError):
        JudgeConfig(bias_mode="lenient")


def test_pass_through_judge_accepts_everything() -> None:
    result = asyncio.run(PassThroughJudge().judge(_candidates(2)))

    assert len(result.passed) == 2
