"""
Monitoring-host event handler.

This is the code that runs when the monitoring host reports activity. It only
writes to the shared namespace (threshold log, stride totals) and never talks
to the network, so it fits inside the host's short callback budget.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Optional, Tuple

from usage_agent.event_log import ThresholdEventLog
from usage_agent.models import (
    EventKind,
    HostEvent,
    IntervalChanged,
    StrideCrossed,
    ThresholdCrossed,
    ThresholdEvent,
)
from usage_agent.storage import SharedStore, running_total_key, stride_block_key

DEFAULT_THRESHOLD_MINUTES = 5

_RAW_VALUE_RE = re.compile(r'rawValue:\s*"([^"]*)"')
_STRIDE_EVENT_RE = re.compile(r"^Usage\.Hour(\d{1,2})\.Min(\d+)$")
_STRIDE_ACTIVITY_RE = re.compile(r"^[^.]+\.(.+)\.Hour(\d{1,2})$")
_KIND_MARKERS = {"threshold": EventKind.THRESHOLD, "limit": EventKind.LIMIT_REACHED}


def _now_local() -> datetime:
    return datetime.now().astimezone()


def _clean_name(name: str) -> str:
    match = _RAW_VALUE_RE.search(name)
    return match.group(1) if match else name.strip()


def parse_event_name(name: str) -> Tuple[Optional[str], int, EventKind]:
    """Decode `<prefix>[.<bundleId>].threshold|limit.<N>min`.

    Returns (package or None, minutes, kind). The package is None when the
    name does not carry one (a session covering several apps). An unreadable
    minute suffix yields the 5 minute default.
    """
    components = _clean_name(name).split(".")

    minutes = DEFAULT_THRESHOLD_MINUTES
    last = components[-1]
    if last.endswith("min"):
        try:
            value = int(last[: -len("min")])
        except ValueError:
            value = 0
        if value > 0:
            minutes = value

    kind = EventKind.THRESHOLD
    package = None
    for index in range(len(components) - 1, 0, -1):
        marker = _KIND_MARKERS.get(components[index])
        if marker is not None:
            kind = marker
            package = ".".join(components[1:index]) or None
            break
    return package, minutes, kind


def parse_stride_event(
    event_name: str, activity: str, occurred_at: Optional[datetime] = None
) -> Optional[StrideCrossed]:
    """Decode `Usage.Hour<h>.Min<m>` fired under `<prefix>.<bundleId>.Hour<h>`."""
    event_match = _STRIDE_EVENT_RE.match(_clean_name(event_name))
    activity_match = _STRIDE_ACTIVITY_RE.match(_clean_name(activity))
    if not event_match or not activity_match:
        return None
    return StrideCrossed(
        package=activity_match.group(1),
        block_hour=int(event_match.group(1)),
        minutes=int(event_match.group(2)),
        occurred_at=occurred_at or _now_local(),
    )


def stride_block_of(activity: str) -> Optional[Tuple[str, int]]:
    match = _STRIDE_ACTIVITY_RE.match(_clean_name(activity))
    if not match:
        return None
    return match.group(1), int(match.group(2))


class ThresholdEventHandler:
    def __init__(
        self,
        store: SharedStore,
        registry,
        event_log: ThresholdEventLog,
        on_appended: Optional[Callable[[], None]] = None,
    ):
        self.store = store
        self.registry = registry
        self.event_log = event_log
        self.on_appended = on_appended
        self.logger = logging.getLogger("emm-usage-agent.handler")

    def handle(self, event: HostEvent) -> int:
        """Record a host notification; returns the number of events queued."""
        if isinstance(event, ThresholdCrossed):
            appended = self._threshold(event)
        elif isinstance(event, StrideCrossed):
            appended = self._stride(event)
        elif isinstance(event, IntervalChanged):
            self._interval(event)
            appended = 0
        else:
            raise TypeError(f"unsupported host event {event!r}")
        if appended and self.on_appended is not None:
            self.on_appended()
        return appended

    def _threshold(self, event: ThresholdCrossed) -> int:
        if event.package is not None:
            packages = [event.package]
            if self.registry.get(event.package) is None:
                self.logger.warning("Threshold for %s, which is not monitored.", event.package)
        else:
            # The host cannot tell which app of a shared session crossed the
            # threshold, so every monitored app is charged.
            packages = self.registry.packages()
            if not packages:
                self.logger.warning(
                    "Threshold reached but no monitored applications are configured."
                )
                return 0

        self.logger.info(
            "%s reached at %s min for %s",
            "Limit" if event.kind is EventKind.LIMIT_REACHED else "Threshold",
            event.minutes,
            ", ".join(packages),
        )
        for package in packages:
            self.event_log.append(
                ThresholdEvent(package, event.minutes, event.occurred_at, event.kind)
            )
        return len(packages)

    def _stride(self, event: StrideCrossed) -> int:
        previous = self._int(running_total_key(event.package))
        total = previous + event.minutes
        self.store.set(stride_block_key(event.package), event.minutes)
        self.logger.info(
            "Stride %s min in block %02d:00 for %s (daily total %s min)",
            event.minutes,
            event.block_hour,
            event.package,
            total,
        )
        self.event_log.append(
            ThresholdEvent(event.package, total, event.occurred_at, EventKind.THRESHOLD)
        )
        return 1

    def _interval(self, event: IntervalChanged) -> None:
        self.logger.info("Monitoring interval %s: %s", event.phase, event.activity)
        block = stride_block_of(event.activity)
        if block is None:
            return
        package, hour = block
        if event.phase == "start" and hour == 0:
            self.store.set(running_total_key(package), 0)
            self.store.set(stride_block_key(package), 0)
        elif event.phase == "end":
            block_usage = self._int(stride_block_key(package))
            total = self._int(running_total_key(package)) + block_usage
            self.store.set(running_total_key(package), total)
            self.store.set(stride_block_key(package), 0)
            self.logger.info(
                "Block %02d:00 for %s ended with %s min; running total %s min",
                hour,
                package,
                block_usage,
                total,
            )

    def _int(self, key: str) -> int:
        value = self.store.get(key, 0)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0
