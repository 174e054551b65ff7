"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

JUDGE_FAILURE_MODES = ("fail_open", "fail_closed")
JUDGE_BIAS_MODES = ("generous", "balanced", "strict")


@dataclass(frozen=True)
class RetrievalConfig:
    """Candidate retrieval breadth and filters."""

    embedding_model_version: str
    top_k: int = 50
    min_similarity: float = 0.0
    radius_km: Optional[float] = None


@dataclass(frozen=True)
class RankingConfig:
    max_fanout_per_item: int = 5
    verification_ttl_days: Optional[int] = 90
    exclude_closed_capacity: bool = True


@dataclass(frozen=True)
class ThrottleConfig:
    """Per-recipient notification cap over a rolling window."""

    cap_per_window: int = 3
    window: timedelta = timedelta(days=7)


@dataclass(frozen=True)
class JudgeConfig:
    """Relevance judge settings.

    failure_mode is an explicit operator decision: fail_open forwards every
    constraint-surviving candidate when the reasoning service is down,
    fail_closed routes the item to the zero-match responder.
    """

    failure_mode: str = "fail_closed"
    bias_mode: str = "generous"
    timeout_seconds: float = 10.0
    max_concurrency: int = 4
    batch_size: int = 8

    def __post_init__(self) -> None:
        if self.failure_mode not in JUDGE_FAILURE_MODES:
            raise ValueError(f"Unsupported judge failure mode: {self.failure_mode}")
        if self.bias_mode not in JUDGE_BIAS_MODES:
            raise ValueError(f"Unsupported judge bias mode: {self.bias_mode}")


@dataclass(frozen=True)
class DispatchConfig:
    """Delivery retry settings consumed by the dispatcher."""

    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 4.0
    max_concurrency: int = 5
    snippet_chars: int = 200


@dataclass(frozen=True)
class EngineConfig:
    retrieval: RetrievalConfig
    ranking: RankingConfig = field(default_factory=RankingConfig)
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    judge: JudgeConfig = field(default_factory=JudgeConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)


@dataclass(frozen=True)
class ReembedConfig:
    """Batch re-embedding of missing or stale vectors."""

    batch_size: int = 16
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    rate_limit_seconds: float = 0.1
    expected_dimension: Optional[int] = None
