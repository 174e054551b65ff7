"""LLM-backed ReasoningPort using a pydantic-ai agent with structured output."""

from __future__ import annotations

import json
import logging
from typing import Optional, Sequence, Tuple

from pydantic import BaseModel, Field
from pydantic_ai import Agent
from pydantic_ai.settings import ModelSettings

from needmatch.core.models import Verdict

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You decide whether a posted need or opportunity is relevant to each candidate.
For every candidate id you receive, return exactly one verdict with:
- passed: true if the candidate could plausibly help or benefit
- justification: one short sentence, addressed to the candidate, saying why
Never mention scores, percentages, or rankings in a justification.
Safety constraints were already checked; judge relevance only.
"""

BIAS_INSTRUCTIONS = {
    "generous": "When unsure, pass the candidate. Missing a good match is worse than one extra alert.",
    "balanced": "Pass candidates that are a reasonable fit; reject clear mismatches.",
    "strict": "Pass only candidates that are an obvious, direct fit.",
}


class CandidateVerdict(BaseModel):
    candidate_id: str
    passed: bool
    justification: str = Field(default="", max_length=400)


class JudgeOutput(BaseModel):
    verdicts: list[CandidateVerdict]


class LLMReasoning:
    """ReasoningPort implementation. The agent is created on first use."""

    def __init__(self, model: str, max_tokens: int = 2048, retries: int = 1) -> None:
        self._model = model
        self._max_tokens = max_tokens
        self._retries = retries
        self._agent: Optional[Agent] = None

    def _get_agent(self) -> Agent:
        if self._agent is None:
            self._agent = Agent(
                model=self._model,
                output_type=JudgeOutput,
                instructions=SYSTEM_PROMPT,
                retries=self._retries,
                model_settings=ModelSettings(max_tokens=self._max_tokens),
                defer_model_check=True,
            )
        return self._agent

    async def evaluate(
        self,
        item_text: str,
        candidate_profiles: Sequence[Tuple[str, str]],
        bias_mode: str,
    ) -> list[Verdict]:
        prompt = build_prompt(item_text, candidate_profiles, bias_mode)
        result = await self._get_agent().run(prompt)
        verdicts = [
            Verdict(candidate_id=v.candidate_id, passed=v.passed, justification=v.justification.strip())
            for v in result.output.verdicts
        ]
        LOGGER.debug("Reasoning returned %s verdicts for %s candidates", len(verdicts), len(candidate_profiles))
        return verdicts


def build_prompt(item_text: str, candidate_profiles: Sequence[Tuple[str, str]], bias_mode: str) -> str:
    candidates = [{"candidate_id": cid, "profile": profile} for cid, profile in candidate_profiles]
    return "\n\n".join(
        [
            BIAS_INSTRUCTIONS.get(bias_mode, BIAS_INSTRUCTIONS["generous"]),
            f"Posted item:\n{item_text}",
            f"Candidates:\n{json.dumps(candidates, ensure_ascii=False, indent=2)}",
        ]
    )
