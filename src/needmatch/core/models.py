"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any storage- or transport-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HardConstraint(str, Enum):
    """Boolean exclusion flags an item can set; ranking and AI never override them."""

    REQUIRES_IDENTITY_DOCUMENT = "requires_identity_document"
    REPORTS_TO_AUTHORITY = "reports_to_authority"
    FACILITY_VISIT_REQUIRED = "facility_visit_required"


class VerificationTier(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    COMMUNITY_REPORTED = "community_reported"


class CapacityStatus(str, Enum):
    ACCEPTING = "accepting"
    LIMITED = "limited"
    CLOSED = "closed"
    UNKNOWN = "unknown"


class GateDecision(str, Enum):
    """Result of the atomic throttle/dedup step for one (item, recipient) pair."""

    ACCEPTED = "accepted"
    ALREADY_NOTIFIED = "already_notified"
    THROTTLED = "throttled"
    RECIPIENT_UNAVAILABLE = "recipient_unavailable"


class OverrideAction(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


@dataclass(frozen=True)
class Item:
    """A discoverable need or opportunity eligible for matching."""

    id: str
    description: str
    category: str = ""
    hard_constraints: frozenset = frozenset()
    verification: VerificationTier = VerificationTier.UNVERIFIED
    last_verified_at: Optional[datetime] = None
    capacity: CapacityStatus = CapacityStatus.UNKNOWN
    embedding: Optional[Tuple[float, ...]] = None
    model_version: Optional[str] = None
    embedded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    active: bool = True
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_matchable(self, now: datetime) -> bool:
        return self.active and not self.is_expired(now)

    def embedding_text(self) -> str:
        if self.category:
            return f"{self.category}\n{self.description}"
        return self.description


@dataclass(frozen=True)
class Recipient:
    """A registered party that can receive notifications.

    Only an opaque delivery handle is kept; the profile text is the source of
    truth for what the recipient can help with.
    """

    id: str
    profile: str
    delivery_handle: str
    incompatible_constraints: frozenset = frozenset()
    embedding: Optional[Tuple[float, ...]] = None
    model_version: Optional[str] = None
    embedded_at: Optional[datetime] = None
    active: bool = True
    paused_until: Optional[datetime] = None
    window_count: int = 0
    window_reset_at: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def is_paused(self, now: datetime) -> bool:
        return self.paused_until is not None and self.paused_until > now

    def is_matchable(self, now: datetime) -> bool:
        return self.active and not self.is_paused(now)


@dataclass(frozen=True)
class Notification:
    """Persisted decision to notify one recipient about one item."""

    item_id: str
    recipient_id: str
    justification: str
    created_at: datetime
    delivered: bool = False
    delivered_at: Optional[datetime] = None
    clicked: bool = False
    not_relevant: bool = False
    not_relevant_reason: Optional[str] = None
    forced: bool = False


@dataclass(frozen=True)
class Candidate:
    """One (item, recipient) pair travelling through the pipeline."""

    item: Item
    recipient: Recipient
    similarity: Optional[float] = None
    forced: bool = False
    justification: Optional[str] = None

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.item.id, self.recipient.id)


@dataclass(frozen=True)
class Verdict:
    """Relevance verdict returned by the reasoning collaborator."""

    candidate_id: str
    passed: bool
    justification: str


@dataclass(frozen=True)
class Override:
    item_id: str
    recipient_id: str
    action: OverrideAction
    note: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DeliveryFailure:
    """Operator-queue entry for a notification the transport could not deliver."""

    id: int
    item_id: str
    recipient_id: str
    attempts: int
    last_error: str
    created_at: datetime
    resolved_at: Optional[datetime] = None


@dataclass(frozen=True)
class PipelineStats:
    """Aggregated counters for one reporting window."""

    window_start: datetime
    window_end: datetime
    runs: int = 0
    runs_by_status: dict = field(default_factory=dict)
    notifications_created: int = 0
    notifications_delivered: int = 0
    notifications_clicked: int = 0
    marked_not_relevant: int = 0
    decisions: dict = field(default_factory=dict)
    open_delivery_failures: int = 0


@dataclass(frozen=True)
class OutboundMessage:
    """Transport-neutral notification content handed to delivery adapters."""

    item_id: str
    title: str
    body: str
    why_relevant: str
    category: str = ""
