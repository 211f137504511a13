from __future__ import annotations

import logging
from typing import List

from usage_agent.models import MonitoredApp
from usage_agent.storage import SHIELDED_APPS, SharedStore


class ShieldController:
    """Decides when a monitored app is blocked and drives the enforcer.

    `enforcer` provides `apply_shield(package, tokens)` and
    `remove_shield(package)`. The shielded set is persisted so the event
    handler process and the agent agree on it.
    """

    def __init__(self, store: SharedStore, enforcer):
        self.store = store
        self.enforcer = enforcer
        self.logger = logging.getLogger("emm-usage-agent.shield")

    def shielded_packages(self) -> List[str]:
        raw = self.store.get(SHIELDED_APPS, [])
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, str)]

    def is_shielded(self, package: str) -> bool:
        return package in self.shielded_packages()

    def _save(self, packages: List[str]) -> None:
        self.store.set(SHIELDED_APPS, sorted(set(packages)))

    def evaluate(self, app: MonitoredApp, total_minutes: int, limit_reached: bool = False) -> bool:
        """Shield `app` if its limit is used up. Returns True on a transition."""
        shielded = self.shielded_packages()
        if app.package_identifier in shielded:
            app.shielded = True
            return False
        if not limit_reached and total_minutes < app.daily_limit_minutes:
            return False

        self.logger.warning(
            "Daily limit reached for %s (%s/%s min), applying shield.",
            app.package_identifier,
            total_minutes,
            app.daily_limit_minutes,
        )
        self.enforcer.apply_shield(app.package_identifier, [app.token])
        shielded.append(app.package_identifier)
        self._save(shielded)
        app.shielded = True
        return True

    def unshield(self, package: str, reason: str = "manual unblock") -> bool:
        shielded = self.shielded_packages()
        if package not in shielded:
            return False
        self.logger.info("Removing shield from %s (%s).", package, reason)
        self.enforcer.remove_shield(package)
        shielded.remove(package)
        self._save(shielded)
        return True

    def on_limit_changed(self, app: MonitoredApp, new_limit: int, current_usage: int) -> bool:
        """Lift the shield when a raised limit leaves room above current usage."""
        if new_limit <= current_usage:
            return False
        if self.unshield(app.package_identifier, reason=f"limit raised to {new_limit} min"):
            app.shielded = False
            return True
        return False

    def unshield_all(self, reason: str = "reset") -> int:
        packages = self.shielded_packages()
        for package in packages:
            self.enforcer.remove_shield(package)
        if packages:
            self._save([])
            self.logger.info("Removed shield from %s app(s) (%s).", len(packages), reason)
        return len(packages)
