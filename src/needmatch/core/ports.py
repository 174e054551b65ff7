"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, reasoning, embedding and
delivery adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol, Sequence, Tuple

from needmatch.core.models import (
    DeliveryFailure,
    GateDecision,
    Item,
    Notification,
    OutboundMessage,
    Override,
    OverrideAction,
    PipelineStats,
    Recipient,
    Verdict,
)


class StoragePort(Protocol):
    """Storage operations required by the core pipeline."""

    def get_item(self, item_id: str) -> Optional[Item]:
        ...

    def get_recipient(self, recipient_id: str) -> Optional[Recipient]:
        ...

    def list_matchable_recipients(self, model_version: str, now: datetime) -> list[Recipient]:
        ...

    def list_matchable_items(self, model_version: str, now: datetime) -> list[Item]:
        ...

    def list_overrides(
        self, item_id: Optional[str] = None, recipient_id: Optional[str] = None
    ) -> list[Override]:
        ...

    def save_override(
        self, item_id: str, recipient_id: str, action: OverrideAction, note: str, now: datetime
    ) -> None:
        ...

    def delete_override(self, item_id: str, recipient_id: str) -> bool:
        ...

    def try_record_notification(
        self,
        item_id: str,
        recipient_id: str,
        justification: str,
        forced: bool,
        now: datetime,
        cap: int,
        window: timedelta,
    ) -> GateDecision:
        """Insert the notification and bump the window counter in one atomic step.

        Raises ConstraintViolationAttempt when the stored item and recipient
        rows violate a hard constraint at commit time.
        """
        ...

    def get_notification(self, item_id: str, recipient_id: str) -> Optional[Notification]:
        ...

    def list_undelivered(self, limit: int = 100) -> list[Notification]:
        ...

    def mark_clicked(self, item_id: str, recipient_id: str) -> bool:
        ...

    def mark_not_relevant(self, item_id: str, recipient_id: str, reason: str) -> bool:
        ...

    def list_unprocessed_item_ids(self, model_version: str, now: datetime) -> list[str]:
        ...

    def mark_delivered(self, item_id: str, recipient_id: str, now: datetime) -> None:
        ...

    def record_delivery_failure(
        self, item_id: str, recipient_id: str, attempts: int, error: str, now: datetime
    ) -> None:
        ...

    def list_delivery_failures(self, include_resolved: bool = False) -> list[DeliveryFailure]:
        ...

    def resolve_delivery_failure(self, failure_id: int, now: datetime) -> bool:
        ...

    def record_audit(
        self,
        item_id: str,
        recipient_id: Optional[str],
        stage: str,
        decision: str,
        detail: str,
        now: datetime,
    ) -> None:
        ...

    def record_run(
        self,
        subject_kind: str,
        subject_id: str,
        status: str,
        candidate_count: int,
        notified_count: int,
        now: datetime,
    ) -> None:
        ...

    def is_kill_switch_engaged(self, component: str) -> bool:
        ...

    def set_kill_switch(self, component: str, engaged: bool, now: datetime) -> None:
        ...

    def collect_stats(self, since: datetime, until: datetime) -> PipelineStats:
        ...


class ReasoningPort(Protocol):
    """External reasoning collaborator used by the relevance judge."""

    async def evaluate(
        self,
        item_text: str,
        candidate_profiles: Sequence[Tuple[str, str]],
        bias_mode: str,
    ) -> list[Verdict]:
        ...


class EmbedderPort(Protocol):
    """Embedding generator used when refreshing stale vectors."""

    model_version: str

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


class DeliveryPort(Protocol):
    """Opaque push transport. Returns True when the message was accepted."""

    async def notify(self, recipient_handle: str, message: OutboundMessage) -> bool:
        ...


class EmbeddingStorePort(Protocol):
    """Storage operations used by the re-embedding job."""

    def list_stale_items(self, model_version: str) -> list[Item]:
        ...

    def list_stale_recipients(self, model_version: str) -> list[Recipient]:
        ...

    def set_item_embedding(
        self, item_id: str, embedding: Sequence[float], model_version: str, now: datetime
    ) -> None:
        ...

    def set_recipient_embedding(
        self, recipient_id: str, embedding: Sequence[float], model_version: str, now: datetime
    ) -> None:
        ...
