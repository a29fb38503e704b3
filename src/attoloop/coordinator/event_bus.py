"""Event bus for loop session events.

The scheduler emits events here; the console reporter, the run transcript
and the notifier subscribe to them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopEvent:
    """A single session event."""

    event_type: str         # "session_start" | "iteration_start" | "iteration_complete" | "agent_error" | "verification_start" | "verification_result" | "session_end" | ...
    timestamp: float = field(default_factory=time.time)
    iteration: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""


class EventBus:
    """In-process pub/sub for loop events."""

    def __init__(self, history_limit: int = 500) -> None:
        self._subscribers: list[Callable[[LoopEvent], Any]] = []
        self._history: list[LoopEvent] = []
        self._history_limit = history_limit

    def emit(self, event: LoopEvent) -> None:
        """Emit an event to all subscribers."""
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        for cb in self._subscribers:
            try:
                cb(event)
            except Exception as exc:
                logger.debug("EventBus subscriber error: %s", exc)

    def subscribe(self, callback: Callable[[LoopEvent], Any]) -> None:
        """Register a subscriber."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[LoopEvent], Any]) -> None:
        """Remove a subscriber."""
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    @property
    def history(self) -> list[LoopEvent]:
        return list(self._history)

    def of_type(self, event_type: str) -> list[LoopEvent]:
        return [e for e in self._history if e.event_type == event_type]
