from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple, Union

from usage_agent.models import UsageRecord
from usage_agent.storage import DAILY_APP_USAGE, SharedStore


def _now_local() -> datetime:
    return datetime.now().astimezone()


class UsageStore:
    """Per-app, per-day cumulative usage kept in the shared namespace."""

    def __init__(self, store: SharedStore, clock: Callable[[], datetime] = _now_local):
        self.store = store
        self.clock = clock
        self.logger = logging.getLogger("emm-usage-agent.usage")

    def today(self) -> str:
        return self.clock().date().isoformat()

    def _load(self) -> Dict[str, UsageRecord]:
        raw = self.store.get(DAILY_APP_USAGE, {})
        if not isinstance(raw, dict):
            self.logger.warning("Ignoring malformed `%s` value.", DAILY_APP_USAGE)
            return {}
        records = {}
        for key, value in raw.items():
            try:
                records[key] = UsageRecord.from_dict(value)
            except (KeyError, TypeError, ValueError):
                self.logger.warning("Dropping unreadable usage entry %s.", key)
        return records

    def _save(self, records: Dict[str, UsageRecord]) -> None:
        self.store.set(
            DAILY_APP_USAGE, {key: record.to_dict() for key, record in records.items()}
        )

    def record_usage(self, package: str, threshold_total_minutes: int) -> Tuple[int, int]:
        """Set today's total for `package` to the reported cumulative total.

        Threshold notifications carry the running total, so the stored value is
        replaced rather than incremented. A total lower than what is already
        stored for today is not applied. Returns (previous, new).
        """
        if threshold_total_minutes < 0:
            raise ValueError("usage minutes must not be negative")

        now = self.clock()
        today = now.date().isoformat()
        records = self._load()
        key = f"{package}_{today}"
        existing = records.get(key)

        if existing is None:
            previous = 0
            records[key] = UsageRecord(package, today, threshold_total_minutes, now)
            self.logger.info(
                "First usage today for %s: %s min (%s)", package, threshold_total_minutes, today
            )
        else:
            previous = existing.cumulative_minutes
            if threshold_total_minutes < previous:
                self.logger.debug(
                    "Ignoring lower total %s min for %s (stored %s min).",
                    threshold_total_minutes,
                    package,
                    previous,
                )
            else:
                existing.cumulative_minutes = threshold_total_minutes
            existing.last_updated = now
            self.logger.info(
                "Usage update for %s: %s -> %s min (%s)",
                package,
                previous,
                existing.cumulative_minutes,
                today,
            )

        self._save(records)
        return previous, records[key].cumulative_minutes

    def get_usage(
        self, package: str, day: Union[date, str, None] = None
    ) -> Optional[UsageRecord]:
        if day is None:
            day = self.today()
        elif isinstance(day, date):
            day = day.isoformat()
        return self._load().get(f"{package}_{day}")

    def get_all_usage_for_today(self) -> List[UsageRecord]:
        today = self.today()
        records = [r for r in self._load().values() if r.calendar_date == today]
        return sorted(records, key=lambda r: r.package_identifier)

    def purge_older_than(self, days: int = 7) -> int:
        cutoff = self.clock() - timedelta(days=days)
        records = self._load()
        kept = {key: r for key, r in records.items() if r.last_updated > cutoff}
        removed = len(records) - len(kept)
        if removed:
            self._save(kept)
            self.logger.info("Cleared %s usage entries older than %s days.", removed, days)
        return removed
