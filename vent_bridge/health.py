"""Health reporting for the bridge's broker sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .adapters.mqtt import SessionState

LOGGER = logging.getLogger(__name__)

CountersProvider = Callable[[], Dict[str, int]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running service.

    Updates arrive from connection state listeners on the event loop, so no
    locking is required.
    """

    def __init__(self, counters: Optional[CountersProvider] = None) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._counters = counters

    def update(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        previous = self._status.get(name)
        if previous is None or previous.healthy != healthy:
            LOGGER.debug("Component %s healthy=%s (%s)", name, healthy, detail)
        self._status[name] = ComponentStatus(name=name, healthy=healthy, detail=detail)

    def session_listener(self, manager, state: SessionState, detail: Optional[str]) -> None:
        """Connection state listener mapping session states to component health."""

        summary = state.value if detail is None else f"{state.value}: {detail}"
        self.update(manager.role.value, state == SessionState.CONNECTED, summary)

    def snapshot(self) -> Dict[str, object]:
        components = [status.as_dict() for status in self._status.values()]
        overall = "ok" if all(item["healthy"] for item in components) else "degraded"

        payload: Dict[str, object] = {"status": overall, "components": components}
        if self._counters is not None:
            payload["counters"] = dict(self._counters())
        return payload
