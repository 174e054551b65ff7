"""Error taxonomy for the matching pipeline.

Throttle exhaustion and repeat notifications are gate decisions, not
exceptions; only the conditions below are raised.
"""

from __future__ import annotations

from typing import Optional


class MatchingError(Exception):
    """Base class for matching pipeline errors."""


class ConfigError(MatchingError):
    """Invalid or missing configuration."""


class UnknownEntity(MatchingError):
    """An event or operator call referenced an item or recipient that does not exist."""


class StaleEmbedding(MatchingError):
    """An embedding is missing or was produced by a different model version."""

    def __init__(self, entity_id: str, found: Optional[str], expected: str) -> None:
        super().__init__(f"{entity_id}: embedding version {found!r}, expected {expected!r}")
        self.entity_id = entity_id
        self.found = found
        self.expected = expected


class ConstraintViolationAttempt(MatchingError):
    """A candidate violating a hard constraint reached a stage it must never reach.

    This always signals a logic defect upstream of the stage that caught it.
    """

    def __init__(self, item_id: str, recipient_id: str, violated: list[str], stage: str) -> None:
        super().__init__(
            f"recipient {recipient_id} violates {', '.join(violated)} on item {item_id} at {stage}"
        )
        self.item_id = item_id
        self.recipient_id = recipient_id
        self.violated = violated
        self.stage = stage


class JudgeUnavailable(MatchingError):
    """The reasoning collaborator failed, timed out, or returned unusable output."""


class DeliveryTransportFailure(MatchingError):
    """The delivery transport rejected or failed to deliver a message."""


class KillSwitchActive(MatchingError):
    """A pipeline stage is disabled by an operator kill switch."""

    def __init__(self, component: str) -> None:
        super().__init__(f"{component} is disabled by kill switch")
        self.component = component
