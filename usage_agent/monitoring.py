"""
Monitored applications and the activity plans handed to the monitoring host.

Each app is monitored in its own activity so the host can attribute a
threshold to exactly one package.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from usage_agent.config import AgentConfig
from usage_agent.models import ApplicationEntry, EventKind, MonitoredApp
from usage_agent.storage import (
    APP_TOKEN_MAPPINGS,
    MONITORED_APPLICATIONS,
    SHIELDED_APPS,
    SharedStore,
    monitored_limit_key,
    monitored_selection_key,
    running_total_key,
    stride_block_key,
)

FINE_STEP_MINUTES = 5
FINE_UNTIL_MINUTES = 15
COARSE_STEP_MINUTES = 15
MAX_THRESHOLD_EVENTS = 12
STRIDE_BLOCKS = 12
STRIDE_BLOCK_HOURS = 2
STRIDE_MAX_MINUTES = 120


@dataclass
class PlannedEvent:
    name: str
    minutes: int
    kind: EventKind = EventKind.THRESHOLD

    def to_payload(self) -> Dict[str, Any]:
        return {"name": self.name, "minutes": self.minutes, "kind": self.kind.value}


@dataclass
class ActivityPlan:
    name: str
    package: str
    tokens: List[str]
    start: str = "00:00"
    end: str = "23:59"
    repeats: bool = True
    events: List[PlannedEvent] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "activity": self.name,
            "package": self.package,
            "tokens": list(self.tokens),
            "schedule": {"start": self.start, "end": self.end, "repeats": self.repeats},
            "events": [event.to_payload() for event in self.events],
        }


@dataclass
class LimitChange:
    package: str
    old_limit: int
    new_limit: int


def threshold_minutes(limit: int) -> List[int]:
    """Report points below `limit`: every 5 min up to 15, then every 15."""
    points = []
    minute = FINE_STEP_MINUTES
    while minute < limit and len(points) < MAX_THRESHOLD_EVENTS:
        points.append(minute)
        minute += FINE_STEP_MINUTES if minute < FINE_UNTIL_MINUTES else COARSE_STEP_MINUTES
    return points


def build_threshold_plan(prefix: str, package: str, limit: int, token: str) -> ActivityPlan:
    events = [
        PlannedEvent(f"{prefix}.{package}.threshold.{m}min", m)
        for m in threshold_minutes(limit)
    ]
    events.append(PlannedEvent(f"{prefix}.{package}.limit.{limit}min", limit, EventKind.LIMIT_REACHED))
    return ActivityPlan(name=f"{prefix}.{package}", package=package, tokens=[token], events=events)


def stride_activity_names(prefix: str, package: str) -> List[str]:
    return [
        f"{prefix}.{package}.Hour{block * STRIDE_BLOCK_HOURS}" for block in range(STRIDE_BLOCKS)
    ]


def build_stride_plans(prefix: str, package: str, token: str) -> List[ActivityPlan]:
    plans = []
    for block in range(STRIDE_BLOCKS):
        start_hour = block * STRIDE_BLOCK_HOURS
        end_hour = start_hour + STRIDE_BLOCK_HOURS - 1
        events = [
            PlannedEvent(f"Usage.Hour{start_hour}.Min{m}", m)
            for m in range(FINE_STEP_MINUTES, STRIDE_MAX_MINUTES + 1, FINE_STEP_MINUTES)
        ]
        plans.append(
            ActivityPlan(
                name=f"{prefix}.{package}.Hour{start_hour}",
                package=package,
                tokens=[token],
                start=f"{start_hour:02d}:00",
                end=f"{end_hour:02d}:59",
                events=events,
            )
        )
    return plans


class MonitoringRegistry:
    """Persisted set of monitored apps.

    `scheduler` provides `start_monitoring(plan)` and
    `stop_monitoring(activity_names)` against the monitoring host.
    """

    def __init__(self, store: SharedStore, scheduler, config: AgentConfig):
        self.store = store
        self.scheduler = scheduler
        self.config = config
        self.logger = logging.getLogger("emm-usage-agent.monitoring")

    # ------------------------------------------------------------- TOKENS --

    def _mappings(self) -> Dict[str, str]:
        raw = self.store.get(APP_TOKEN_MAPPINGS, {})
        return raw if isinstance(raw, dict) else {}

    def register_token(self, package: str, token: str) -> None:
        if not token:
            raise ValueError("monitoring token must not be empty")
        mappings = self._mappings()
        mappings[package] = token
        self.store.set(APP_TOKEN_MAPPINGS, mappings)
        self.logger.info("Stored monitoring token for %s.", package)

    def token_for(self, package: str) -> Optional[str]:
        token = self.store.get(monitored_selection_key(package))
        if isinstance(token, str) and token:
            return token
        token = self._mappings().get(package)
        return token if isinstance(token, str) and token else None

    # -------------------------------------------------------------- QUERY --

    def _limits(self) -> Dict[str, int]:
        raw = self.store.get(MONITORED_APPLICATIONS, {})
        if not isinstance(raw, dict):
            return {}
        return {k: int(v) for k, v in raw.items() if isinstance(v, int) and v > 0}

    def packages(self) -> List[str]:
        return sorted(self._limits())

    def is_empty(self) -> bool:
        return not self._limits()

    def get(self, package: str) -> Optional[MonitoredApp]:
        limit = self._limits().get(package)
        if limit is None:
            return None
        stored_limit = self.store.get(monitored_limit_key(package))
        if isinstance(stored_limit, int) and stored_limit > 0:
            limit = stored_limit
        shielded = self.store.get(SHIELDED_APPS, [])
        return MonitoredApp(
            package_identifier=package,
            daily_limit_minutes=limit,
            token=self.token_for(package) or "",
            shielded=isinstance(shielded, list) and package in shielded,
        )

    def apps(self) -> List[MonitoredApp]:
        return [app for app in (self.get(p) for p in self.packages()) if app is not None]

    # ------------------------------------------------------------ CONTROL --

    def _activity_names(self, package: str) -> List[str]:
        prefix = self.config.activity_prefix
        return [f"{prefix}.{package}"] + stride_activity_names(prefix, package)

    def start_monitoring(self, package: str, limit: int, token: Optional[str] = None) -> bool:
        token = token or self.token_for(package)
        if not token:
            self.logger.warning(
                "Cannot monitor %s: no app selection token registered for it.", package
            )
            return False
        if limit <= 0:
            raise ValueError("daily limit must be positive")

        limits = self._limits()
        restarting = package in limits
        limits[package] = limit
        self.store.set(MONITORED_APPLICATIONS, limits)
        self.store.set(monitored_selection_key(package), token)
        self.store.set(monitored_limit_key(package), limit)

        prefix = self.config.activity_prefix
        # Replaces any schedule from a previous limit or mode.
        self.scheduler.stop_monitoring(self._activity_names(package))
        if self.config.monitoring_mode == "stride":
            if not restarting:
                self.store.set(running_total_key(package), 0)
                self.store.set(stride_block_key(package), 0)
            plans = build_stride_plans(prefix, package, token)
        else:
            plans = [build_threshold_plan(prefix, package, limit, token)]
        for plan in plans:
            self.scheduler.start_monitoring(plan)
        self.logger.info(
            "Monitoring %s with a %s min daily limit (%s activit%s).",
            package,
            limit,
            len(plans),
            "y" if len(plans) == 1 else "ies",
        )
        return True

    def stop_monitoring(self, package: str) -> bool:
        limits = self._limits()
        if package not in limits:
            self.logger.debug("Stop requested for %s, which is not monitored.", package)
            return False
        self.scheduler.stop_monitoring(self._activity_names(package))
        del limits[package]
        self.store.set(MONITORED_APPLICATIONS, limits)
        for key in (
            monitored_selection_key(package),
            monitored_limit_key(package),
            running_total_key(package),
            stride_block_key(package),
        ):
            self.store.delete(key)
        self.logger.info("Stopped monitoring %s.", package)
        return True

    def sync_limits(self, entries: List[ApplicationEntry]) -> List[LimitChange]:
        """Apply server-side limits to monitored apps, restarting changed ones."""
        changes = []
        for entry in entries:
            app = self.get(entry.package_name)
            if app is None:
                if self.token_for(entry.package_name):
                    self.start_monitoring(entry.package_name, entry.daily_limit_minutes)
                else:
                    self.logger.debug(
                        "%s is listed by the server but has no selection token.",
                        entry.package_name,
                    )
                continue
            if app.daily_limit_minutes == entry.daily_limit_minutes:
                continue
            self.logger.info(
                "Daily limit for %s changed: %s -> %s min",
                entry.package_name,
                app.daily_limit_minutes,
                entry.daily_limit_minutes,
            )
            self.start_monitoring(entry.package_name, entry.daily_limit_minutes, app.token)
            changes.append(
                LimitChange(entry.package_name, app.daily_limit_minutes, entry.daily_limit_minutes)
            )
        return changes
