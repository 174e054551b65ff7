"""Kill switch components and the entry check shared by pipeline stages."""

from __future__ import annotations

from needmatch.core.errors import KillSwitchActive

MATCHING = "matching"
DELIVERY = "delivery"
COMPONENTS = (MATCHING, DELIVERY)


def ensure_enabled(storage, component: str) -> None:
    """Raise KillSwitchActive when the operator has disabled ``component``."""

    if storage.is_kill_switch_engaged(component):
        raise KillSwitchActive(component)
