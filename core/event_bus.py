"""
Event Bus - lifecycle notifications for anyone listening

Agent → EventBus → SSE bridge → dashboard.
Not load-bearing: a listener that raises is logged and skipped, and the bus
never blocks the emitter. Keeps the last N events in a ring buffer so a
fresh dashboard can show recent activity.
"""

import logging
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger("autonome.event_bus")

Listener = Callable[["AgentEvent"], None]


@dataclass
class AgentEvent:
    type: str
    data: dict = field(default_factory=dict)
    timestamp: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class EventBus:
    """Explicitly constructed and passed to every component that publishes or subscribes."""

    def __init__(self, max_events: int = 200):
        self._recent: deque[AgentEvent] = deque(maxlen=max_events)
        self._listeners: list[Listener] = []

    def emit(self, event_type: str, data: dict = None) -> AgentEvent:
        event = AgentEvent(
            type=event_type,
            data=dict(data or {}),
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        self._recent.append(event)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed on {event_type}: {e}")
        return event

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns the matching unsubscribe callback."""
        self._listeners.append(listener)

        def _unsubscribe():
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def recent(self, count: int = 50) -> list[AgentEvent]:
        """Last `count` events, oldest first."""
        if count <= 0:
            return []
        return list(self._recent)[-count:]

    def clear(self):
        self._recent.clear()
