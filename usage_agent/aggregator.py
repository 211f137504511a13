from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from usage_agent.event_log import ThresholdEventLog
from usage_agent.models import EventKind, ThresholdEvent
from usage_agent.usage_store import UsageStore


@dataclass
class AggregationResult:
    new_events: List[ThresholdEvent] = field(default_factory=list)
    totals: Dict[str, int] = field(default_factory=dict)

    def limit_reached(self, package: str) -> bool:
        return any(
            e.package_identifier == package and e.kind is EventKind.LIMIT_REACHED
            for e in self.new_events
        )


class UsageAggregator:
    """Folds the event log into the usage store, once per distinct event.

    Dedup keys seen by this process are kept in memory. Across restarts the
    log's processed mark is used instead: anything at or before the newest
    event an earlier process handled is skipped. Events from a previous
    calendar day are never applied to today's usage.
    """

    def __init__(self, event_log: ThresholdEventLog, usage_store: UsageStore, registry):
        self.event_log = event_log
        self.usage_store = usage_store
        self.registry = registry
        self.logger = logging.getLogger("emm-usage-agent.aggregator")
        self._seen: Set[Tuple[str, float, int]] = set()
        self._resume_after: Optional[float] = None

    def seen(self, event: ThresholdEvent) -> bool:
        return event.dedup_key in self._seen

    def process(self) -> AggregationResult:
        result = AggregationResult()
        if self.registry.is_empty():
            self.logger.warning(
                "No monitored applications configured; skipping threshold processing."
            )
            return result

        if self._resume_after is None:
            self._resume_after = self.event_log.processed_mark()

        now = self.usage_store.clock()
        events = self.event_log.drain()
        latest: Dict[str, ThresholdEvent] = {}
        newest: Optional[float] = None
        stale = 0
        for event in events:
            key = event.dedup_key
            if key in self._seen:
                continue
            timestamp = event.occurred_at.timestamp()
            if timestamp <= self._resume_after:
                continue
            self._seen.add(key)
            newest = timestamp if newest is None else max(newest, timestamp)
            if event.occurred_at.astimezone(now.tzinfo).date() != now.date():
                stale += 1
                continue
            result.new_events.append(event)

            package = event.package_identifier
            current = latest.get(package)
            # Later log position wins ties on occurred_at.
            if current is None or event.occurred_at >= current.occurred_at:
                latest[package] = event

        for package, event in latest.items():
            previous, total = self.usage_store.record_usage(package, event.cumulative_minutes)
            result.totals[package] = total
            if previous != total:
                self.logger.info("%s: %s -> %s min today", package, previous, total)

        if newest is not None:
            self.event_log.mark_processed(newest)
        if stale:
            self.logger.info("Skipped %s threshold event(s) from a previous day.", stale)
        if result.new_events:
            self.logger.info(
                "Processed %s new threshold event(s) out of %s queued.",
                len(result.new_events),
                len(events),
            )
        return result
