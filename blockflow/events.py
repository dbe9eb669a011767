"""Event system — append-only log with streaming support."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

from blockflow.models import Event

logger = logging.getLogger(__name__)


class EventBus:
    """Append-only event log with subscription support.

    Progress snapshots from the batch queue and download orchestrator land
    here so the API can stream them.
    """

    def __init__(self, log_file: Path | None = None, max_history: int = 5000):
        self._log_file = log_file
        self._subscribers: list[asyncio.Queue] = []
        self._history: list[Event] = []
        self._max_history = max_history

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)

    def emit(self, event: Event):
        """Emit an event — log and notify subscribers."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            del self._history[: len(self._history) - self._max_history]
        self._persist(event)
        self._notify(event)
        logger.debug(f"Event: {event.type} [{event.source_id}] {event.data}")

    def emit_simple(self, type: str, source_id: str, /, **data):
        """Convenience: emit with keyword args."""
        self.emit(Event(type=type, source_id=source_id, data=data))

    def recent(self, limit: int = 50, offset: int = 0, type_prefix: str | None = None) -> list[Event]:
        """Get recent events (paginated)."""
        history = self._history
        if type_prefix:
            history = [e for e in history if e.type.startswith(type_prefix)]
        start = max(0, len(history) - offset - limit)
        end = len(history) - offset
        return history[start:end]

    def subscribe(self) -> asyncio.Queue:
        """Subscribe to live events."""
        q: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self._subscribers:
            self._subscribers.remove(q)

    def _persist(self, event: Event):
        if self._log_file:
            with open(self._log_file, "a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")

    def _notify(self, event: Event):
        for q in self._subscribers:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Slow subscriber; it can catch up via recent()
                pass
