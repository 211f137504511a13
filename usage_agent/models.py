"""Data types shared by the usage pipeline."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union


class EventKind(str, enum.Enum):
    THRESHOLD = "threshold"
    LIMIT_REACHED = "limit"


@dataclass(frozen=True)
class ThresholdEvent:
    """A threshold notification as received from the monitoring host.

    `cumulative_minutes` is the total usage of the app in the current
    monitoring window when the threshold fired, not a delta.
    """

    package_identifier: str
    cumulative_minutes: int
    occurred_at: datetime
    kind: EventKind = EventKind.THRESHOLD

    @property
    def dedup_key(self) -> Tuple[str, float, int]:
        return (
            self.package_identifier,
            round(self.occurred_at.timestamp(), 6),
            self.cumulative_minutes,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundleIdentifier": self.package_identifier,
            "thresholdMinutes": self.cumulative_minutes,
            "timestamp": self.occurred_at.timestamp(),
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThresholdEvent":
        package = data.get("bundleIdentifier")
        minutes = data.get("thresholdMinutes")
        timestamp = data.get("timestamp")
        if not isinstance(package, str) or not package:
            raise ValueError("event is missing `bundleIdentifier`")
        if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 0:
            raise ValueError(f"invalid `thresholdMinutes`: {minutes!r}")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValueError(f"invalid `timestamp`: {timestamp!r}")
        kind = EventKind(data.get("kind", EventKind.THRESHOLD.value))
        return cls(
            package_identifier=package,
            cumulative_minutes=minutes,
            occurred_at=datetime.fromtimestamp(float(timestamp)).astimezone(),
            kind=kind,
        )


@dataclass
class UsageRecord:
    package_identifier: str
    calendar_date: str
    cumulative_minutes: int
    last_updated: datetime

    @property
    def key(self) -> str:
        return f"{self.package_identifier}_{self.calendar_date}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "packageName": self.package_identifier,
            "date": self.calendar_date,
            "totalMinutes": self.cumulative_minutes,
            "totalSeconds": self.cumulative_minutes * 60,
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            package_identifier=str(data["packageName"]),
            calendar_date=str(data["date"]),
            cumulative_minutes=int(data["totalMinutes"]),
            last_updated=datetime.fromisoformat(data["lastUpdated"]),
        )


@dataclass
class MonitoredApp:
    package_identifier: str
    daily_limit_minutes: int
    token: str
    shielded: bool = False


@dataclass
class ApplicationEntry:
    """One row of the backend application list, already normalized."""

    package_name: str
    daily_limit_minutes: int
    used_limit: int = 0
    display_text: Optional[str] = None

    @property
    def display_name(self) -> str:
        if self.display_text:
            return self.display_text
        return self.package_name.split(".")[-1].capitalize()


# Host notifications. Adapters talking to the monitoring host build these
# directly; the legacy dotted event names are decoded in `handler`.


@dataclass(frozen=True)
class ThresholdCrossed:
    package: Optional[str]
    minutes: int
    kind: EventKind
    occurred_at: datetime


@dataclass(frozen=True)
class StrideCrossed:
    package: str
    block_hour: int
    minutes: int
    occurred_at: datetime


@dataclass(frozen=True)
class IntervalChanged:
    activity: str
    phase: str  # start | end
    occurred_at: Optional[datetime] = field(default=None, compare=False)


HostEvent = Union[ThresholdCrossed, StrideCrossed, IntervalChanged]
