from __future__ import annotations

import logging
import re
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

import httpx

from usage_agent.api import USAGE_CREATE_PATH, BackendClient
from usage_agent.config import AgentConfig, ConfigurationError
from usage_agent.models import UsageRecord

_BATTERY_RE = re.compile(r"(\d{1,3})%")


def _now_local() -> datetime:
    return datetime.now().astimezone()


def read_battery_percentage() -> int:
    """Battery charge from `pmset`, or -1 when it cannot be read."""
    try:
        result = subprocess.run(
            ["/usr/bin/pmset", "-g", "batt"],
            check=True,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return -1
    match = _BATTERY_RE.search(result.stdout)
    if not match:
        return -1
    return min(100, int(match.group(1)))


class UsageReporter:
    """Builds usage reports and posts them to the backend.

    Delivery is at most once: failures are logged and returned as False, and
    nothing is queued for retry.
    """

    def __init__(
        self,
        config: AgentConfig,
        backend: BackendClient,
        battery: Callable[[], int] = read_battery_percentage,
        clock: Callable[[], datetime] = _now_local,
    ):
        self.config = config
        self.backend = backend
        self.battery = battery
        self.clock = clock
        self.logger = logging.getLogger("emm-usage-agent.reporting")

    def _require_identity(self) -> None:
        missing = self.config.missing_identity_fields()
        if missing:
            raise ConfigurationError(
                "Missing required device identity: " + ", ".join(missing)
            )

    def build_payload(self, usages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "email": self.config.email,
            "profileId": self.config.profile_id,
            "serialNumber": self.config.serial_number,
            "batteryPercentage": self.battery(),
            "appVersion": self.config.client_version,
            "applicationUsages": usages,
        }

    def report(self, package: str, cumulative_minutes: int) -> bool:
        self._require_identity()
        now = self.clock()
        usage = {
            "packageName": package,
            "date": now.date().isoformat(),
            "createdOn": now.isoformat(timespec="seconds"),
            "timeInMinute": cumulative_minutes,
        }
        self.logger.info("Reporting %s: %s min", package, cumulative_minutes)
        return self._send(self.build_payload([usage]))

    def report_batch(self, records: List[UsageRecord]) -> bool:
        self._require_identity()
        if not records:
            self.logger.warning("No usage data to report.")
            return True
        usages = [
            {
                "packageName": record.package_identifier,
                "date": record.calendar_date,
                "createdOn": record.last_updated.isoformat(timespec="seconds"),
                "timeInMinute": record.cumulative_minutes,
            }
            for record in records
        ]
        self.logger.info("Reporting batch usage for %s app(s).", len(usages))
        for usage in usages:
            self.logger.debug("  - %s: %s min", usage["packageName"], usage["timeInMinute"])
        return self._send(self.build_payload(usages))

    def _send(self, payload: Dict[str, Any]) -> bool:
        try:
            response = self.backend.post_json(USAGE_CREATE_PATH, payload)
        except httpx.HTTPError as exc:
            self.logger.error("Network error sending usage report: %s", exc)
            return False

        if not response.is_success:
            self.logger.error(
                "Usage report rejected (HTTP %s): %s",
                response.status_code,
                response.text[:500],
            )
            return False

        try:
            decoded = response.json()
        except ValueError:
            decoded = None
        if isinstance(decoded, dict) and decoded.get("success") is False:
            self.logger.error("Usage report refused: %s", decoded.get("message") or "")
            return False
        self.logger.info("Usage report sent (HTTP %s).", response.status_code)
        return True


class ReportDispatcher:
    """Runs reports off the event path on a small worker pool."""

    def __init__(self, reporter: UsageReporter, max_workers: int = 2):
        self.reporter = reporter
        self.logger = logging.getLogger("emm-usage-agent.reporting")
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="usage-report"
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    def _run(self, fn: Callable[..., bool], *args) -> bool:
        try:
            return fn(*args)
        except ConfigurationError as exc:
            self.logger.error("Usage report not sent: %s", exc)
            return False
        except Exception:
            self.logger.exception("Unexpected error while reporting usage.")
            return False

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _track(self, future: Future) -> Future:
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def submit_report(self, package: str, cumulative_minutes: int) -> "Future[bool]":
        return self._track(
            self._executor.submit(self._run, self.reporter.report, package, cumulative_minutes)
        )

    def submit_batch(self, records: List[UsageRecord]) -> "Future[bool]":
        return self._track(
            self._executor.submit(self._run, self.reporter.report_batch, list(records))
        )

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight reports; True when all finished within `timeout`."""
        with self._pending_lock:
            pending = list(self._pending)
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        if not self.wait(timeout):
            with self._pending_lock:
                unfinished = len(self._pending)
            self.logger.warning("Abandoning %s unfinished usage report(s).", unfinished)
        self._executor.shutdown(wait=False, cancel_futures=True)
