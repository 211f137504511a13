from __future__ import annotations

import logging
from typing import List

from usage_agent.models import ThresholdEvent
from usage_agent.storage import LAST_PROCESSED_EVENT_AT, THRESHOLD_EVENTS, SharedStore

DEFAULT_CAPACITY = 50


class ThresholdEventLog:
    """Bounded FIFO of raw threshold events in the shared namespace.

    The log is advisory: it keeps the last `capacity` events for processing
    and inspection, and draining does not remove anything. Whether an event
    has already been handled is decided by the aggregator.
    """

    def __init__(self, store: SharedStore, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.store = store
        self.capacity = capacity
        self.logger = logging.getLogger("emm-usage-agent.events")

    def append(self, event: ThresholdEvent) -> None:
        items = self.store.append(THRESHOLD_EVENTS, event.to_dict(), limit=self.capacity)
        self.logger.debug(
            "Saved threshold event %s @ %s min (%s queued)",
            event.package_identifier,
            event.cumulative_minutes,
            len(items),
        )

    def drain(self) -> List[ThresholdEvent]:
        raw = self.store.get(THRESHOLD_EVENTS, [])
        if not isinstance(raw, list):
            self.logger.warning("Ignoring malformed `%s` value.", THRESHOLD_EVENTS)
            return []
        events = []
        for item in raw:
            try:
                events.append(ThresholdEvent.from_dict(item))
            except (AttributeError, TypeError, ValueError) as exc:
                self.logger.warning("Skipping invalid threshold event %r: %s", item, exc)
        return events

    def processed_mark(self) -> float:
        """Timestamp of the newest event handled by any earlier drain, or 0."""
        raw = self.store.get(LAST_PROCESSED_EVENT_AT, 0.0)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            return 0.0
        return float(raw)

    def mark_processed(self, timestamp: float) -> None:
        if timestamp > self.processed_mark():
            self.store.set(LAST_PROCESSED_EVENT_AT, timestamp)
