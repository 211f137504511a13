#!/usr/bin/env python3
"""
EMM usage agent process.

Wires the pipeline together: host notifications are queued by the event
handler, each drain cycle folds new events into daily usage, applies shields
for apps over their limit and dispatches usage reports in the background.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
import time
from concurrent.futures import Future
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from usage_agent import VERSION
from usage_agent.aggregator import AggregationResult, UsageAggregator
from usage_agent.api import BackendClient, BackendError, CommandResult
from usage_agent.config import DEFAULT_CONFIG_PATH, AgentConfig, ConfigurationError
from usage_agent.event_log import ThresholdEventLog
from usage_agent.handler import ThresholdEventHandler
from usage_agent.host import HostBridge
from usage_agent.models import HostEvent
from usage_agent.monitoring import MonitoringRegistry
from usage_agent.reporting import ReportDispatcher, UsageReporter, read_battery_percentage
from usage_agent.shield import ShieldController
from usage_agent.storage import LAST_ROLLOVER_DATE, SharedStore
from usage_agent.usage_store import UsageStore

PURGE_INTERVAL_SECONDS = 3600
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _now_local() -> datetime:
    return datetime.now().astimezone()


class UsageAgent:
    def __init__(
        self,
        config: AgentConfig,
        store: Optional[SharedStore] = None,
        bridge=None,
        backend: Optional[BackendClient] = None,
        battery: Callable[[], int] = read_battery_percentage,
        clock: Callable[[], datetime] = _now_local,
    ):
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger("emm-usage-agent")
        self.last_error: Optional[str] = None

        self._wake = threading.Event()
        self._running = False
        self._last_purge: Optional[float] = None

        self.store = store or SharedStore(config.state_path)
        self.bridge = bridge or HostBridge(config, self.handle_host_event)
        self.backend = backend or BackendClient(config)

        self.registry = MonitoringRegistry(self.store, self.bridge, config)
        self.event_log = ThresholdEventLog(self.store, config.event_log_capacity)
        self.usage = UsageStore(self.store, clock)
        self.aggregator = UsageAggregator(self.event_log, self.usage, self.registry)
        self.shield = ShieldController(self.store, self.bridge)
        self.reporter = UsageReporter(config, self.backend, battery=battery, clock=clock)
        self.dispatcher = ReportDispatcher(self.reporter)
        self.handler = ThresholdEventHandler(
            self.store, self.registry, self.event_log, on_appended=self._wake.set
        )

    def open(self) -> "UsageAgent":
        self.store.open()
        return self

    # ------------------------------------------------------------ HOST SIDE --

    def handle_host_event(self, event: HostEvent) -> int:
        return self.handler.handle(event)

    # ----------------------------------------------------------- PIPELINE --

    def drain(self) -> AggregationResult:
        result = self.aggregator.process()
        for package, total in result.totals.items():
            app = self.registry.get(package)
            if app is None:
                continue
            self.shield.evaluate(app, total, limit_reached=result.limit_reached(package))
        for event in result.new_events:
            self.dispatcher.submit_report(event.package_identifier, event.cumulative_minutes)
        return result

    def check_rollover(self) -> bool:
        """Note a new calendar day; returns True when the date changed."""
        today = self.clock().date().isoformat()
        last = self.store.get(LAST_ROLLOVER_DATE)
        if last == today:
            return False
        self.store.set(LAST_ROLLOVER_DATE, today)
        if last is None:
            return False
        self.logger.info("New usage day %s (previous %s).", today, last)
        if self.config.unshield_at_rollover:
            self.shield.unshield_all(reason="new day")
        return True

    def purge(self) -> int:
        self._last_purge = time.monotonic()
        return self.usage.purge_older_than(self.config.retention_days)

    def run_once(self) -> AggregationResult:
        self.check_rollover()
        result = self.drain()
        if self._last_purge is None or time.monotonic() - self._last_purge >= PURGE_INTERVAL_SECONDS:
            self.purge()
        return result

    # ----------------------------------------------------------- COMMANDS --

    def refresh_applications(self) -> bool:
        try:
            entries = self.backend.fetch_application_list()
        except (ConfigurationError, BackendError) as exc:
            self.last_error = str(exc)
            self.logger.error("Application list refresh failed: %s", exc)
            return False

        for change in self.registry.sync_limits(entries):
            app = self.registry.get(change.package)
            if app is None:
                continue
            record = self.usage.get_usage(change.package)
            used = record.cumulative_minutes if record else 0
            if change.new_limit > change.old_limit:
                self.shield.on_limit_changed(app, change.new_limit, used)
            else:
                self.shield.evaluate(app, used)
        self.last_error = None
        return True

    def select_app(self, package: str, token: str, limit: Optional[int] = None) -> bool:
        self.registry.register_token(package, token)
        return self.registry.start_monitoring(
            package, limit or self.config.default_daily_limit, token
        )

    def stop_monitoring(self, package: str) -> bool:
        stopped = self.registry.stop_monitoring(package)
        self.shield.unshield(package, reason="monitoring stopped")
        return stopped

    def unblock(self, package: str) -> bool:
        return self.shield.unshield(package)

    def resync(self) -> "Future[bool]":
        return self.dispatcher.submit_batch(self.usage.get_all_usage_for_today())

    def send_device_command(self) -> CommandResult:
        try:
            result = self.backend.send_device_command()
        except ConfigurationError as exc:
            self.last_error = str(exc)
            self.logger.error("Device command not sent: %s", exc)
            return CommandResult(False, str(exc))
        self.last_error = None if result.success else result.message
        return result

    # ----------------------------------------------------------- MAIN LOOP --

    def start(self) -> None:
        self.logger.info("Starting EMM usage agent v%s", VERSION)
        self.open()
        self._running = True
        self.bridge.connect()
        self.refresh_applications()
        for app in self.registry.apps():
            self.logger.info(
                "Monitoring %s: %s min daily limit%s",
                app.package_identifier,
                app.daily_limit_minutes,
                " (shielded)" if app.shielded else "",
            )
        self._main_loop()

    def stop(self) -> None:
        self._running = False
        self._wake.set()

    def _main_loop(self) -> None:
        try:
            while self._running:
                try:
                    self.run_once()
                except OSError:
                    self.logger.error("Drain cycle failed on shared storage.", exc_info=True)
                self._wake.wait(timeout=float(self.config.drain_interval_seconds))
                self._wake.clear()
        except KeyboardInterrupt:
            self.logger.info("Stopping agent (SIGINT).")
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        self._running = False
        self.dispatcher.shutdown(timeout=10.0)
        self.bridge.disconnect()
        self.backend.close()
        self.store.close()


def _setup_logging(cfg: AgentConfig) -> None:
    log_path = Path(cfg.log_file).expanduser()
    err_path = Path(cfg.err_log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    err_path.parent.mkdir(parents=True, exist_ok=True)

    handler_file = logging.FileHandler(log_path)
    handler_file.setFormatter(logging.Formatter(LOG_FORMAT))
    handler_err = logging.FileHandler(err_path)
    handler_err.setLevel(logging.ERROR)
    handler_err.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        handlers=[handler_file, handler_err, logging.StreamHandler(sys.stdout)],
    )


def main() -> None:
    config_path = Path(
        os.environ.get("EMM_USAGE_AGENT_CONFIG", DEFAULT_CONFIG_PATH)
    ).expanduser()
    try:
        cfg = AgentConfig.load(config_path)
    except Exception as exc:  # pragma: no cover - startup validation
        print(f"Failed to load config: {exc}", file=sys.stderr)
        sys.exit(2)

    _setup_logging(cfg)
    agent = UsageAgent(cfg)

    def handle_signal(signum, frame):
        agent.logger.info("Received signal %s, shutting down.", signum)
        agent.stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    agent.start()


if __name__ == "__main__":
    main()
