"""Operator controls over the matching pipeline.

Every control is a thin, logged call into storage or the engine so that the
CLI and the console share one code path.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from needmatch.core.dispatcher import DeliveryDispatcher, DispatchReport
from needmatch.core.engine import MatchingEngine, MatchOutcome
from needmatch.core.errors import UnknownEntity
from needmatch.core.kill_switch import COMPONENTS
from needmatch.core.models import DeliveryFailure, OverrideAction, PipelineStats, utcnow
from needmatch.core.ports import StoragePort

LOGGER = logging.getLogger(__name__)


class OperatorControls:
    def __init__(
        self,
        storage: StoragePort,
        engine: MatchingEngine,
        dispatcher: DeliveryDispatcher,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._engine = engine
        self._dispatcher = dispatcher
        self._clock = clock

    def set_kill_switch(self, component: str, enabled: bool) -> None:
        """Engage (``enabled=True``) or release the kill switch for a component."""

        if component not in COMPONENTS:
            raise ValueError(f"Unknown component {component!r}; expected one of {', '.join(COMPONENTS)}")
        self._storage.set_kill_switch(component, enabled, self._clock())
        LOGGER.warning("Kill switch for %s %s", component, "engaged" if enabled else "released")

    def kill_switch_state(self) -> dict:
        return {component: self._storage.is_kill_switch_engaged(component) for component in COMPONENTS}

    async def preview(self, item_id: str) -> MatchOutcome:
        """Who would be notified for ``item_id`` right now, with reasons."""

        self._require_item(item_id)
        return await self._engine.preview(item_id)

    def force_include(self, item_id: str, recipient_id: str, note: str = "") -> None:
        self._require_pair(item_id, recipient_id)
        self._storage.save_override(item_id, recipient_id, OverrideAction.INCLUDE, note, self._clock())
        LOGGER.info("Operator force-include: recipient %s on item %s (%s)", recipient_id, item_id, note or "no note")

    def force_exclude(self, item_id: str, recipient_id: str, note: str = "") -> None:
        self._require_pair(item_id, recipient_id)
        self._storage.save_override(item_id, recipient_id, OverrideAction.EXCLUDE, note, self._clock())
        LOGGER.info("Operator force-exclude: recipient %s on item %s (%s)", recipient_id, item_id, note or "no note")

    def clear_override(self, item_id: str, recipient_id: str) -> bool:
        removed = self._storage.delete_override(item_id, recipient_id)
        if removed:
            LOGGER.info("Operator override cleared: recipient %s on item %s", recipient_id, item_id)
        return removed

    def get_pipeline_stats(self, window: timedelta) -> PipelineStats:
        until = self._clock()
        return self._storage.collect_stats(until - window, until)

    def list_operator_queue(self) -> List[DeliveryFailure]:
        return self._storage.list_delivery_failures()

    def resolve_failure(self, failure_id: int) -> bool:
        resolved = self._storage.resolve_delivery_failure(failure_id, self._clock())
        if resolved:
            LOGGER.info("Operator resolved delivery failure %s", failure_id)
        return resolved

    async def retry_failed(self, limit: int = 100) -> DispatchReport:
        """Flush notifications that are committed but undelivered."""

        report = await self._dispatcher.dispatch_pending(limit)
        LOGGER.info("Retry delivered %s, failed %s", len(report.delivered), len(report.failed))
        return report

    def mark_clicked(self, item_id: str, recipient_id: str) -> bool:
        return self._storage.mark_clicked(item_id, recipient_id)

    def record_not_relevant(self, item_id: str, recipient_id: str, reason: Optional[str] = None) -> bool:
        """Recipient feedback; kept for review, never fed back into scoring."""

        return self._storage.mark_not_relevant(item_id, recipient_id, reason or "")

    def _require_item(self, item_id: str) -> None:
        if self._storage.get_item(item_id) is None:
            raise UnknownEntity(f"item {item_id} not found")

    def _require_pair(self, item_id: str, recipient_id: str) -> None:
        self._require_item(item_id)
        if self._storage.get_recipient(recipient_id) is None:
            raise UnknownEntity(f"recipient {recipient_id} not found")
