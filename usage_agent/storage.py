"""
Shared key/value namespace.

The monitoring-host event handler and the foreground agent may run as separate
processes; everything they exchange goes through this store. Each call
re-reads the backing file, and each mutation rewrites a single key and is on
disk before the call returns. Concurrent writers from different processes
resolve as last-write-wins.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

MONITORED_APPLICATIONS = "monitoredApplications"
APP_TOKEN_MAPPINGS = "appTokenMappings"
SHIELDED_APPS = "shieldedApps"
THRESHOLD_EVENTS = "thresholdEvents"
DAILY_APP_USAGE = "dailyAppUsage"
LAST_ROLLOVER_DATE = "lastRolloverDate"
LAST_PROCESSED_EVENT_AT = "lastProcessedEventAt"


def monitored_selection_key(package: str) -> str:
    return f"monitoredSelection.{package}"


def monitored_limit_key(package: str) -> str:
    return f"monitoredLimit.{package}"


def running_total_key(package: str) -> str:
    return f"runningTotal.{package}"


def stride_block_key(package: str) -> str:
    return f"strideBlock.{package}"


class SharedStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = logging.getLogger("emm-usage-agent.store")
        self._lock = threading.RLock()
        self._open = False

    def open(self) -> "SharedStore":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._open = True
        return self

    def close(self) -> None:
        self._open = False

    def __enter__(self) -> "SharedStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------ I/O --

    def _require_open(self) -> None:
        if not self._open:
            raise RuntimeError(f"Shared store {self.path} is not open.")

    def _read(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            self.logger.warning(
                "Failed to read shared store %s, treating it as empty.",
                self.path,
                exc_info=True,
            )
            return {}
        if not isinstance(data, dict):
            self.logger.warning("Shared store %s is not a JSON object, ignoring it.", self.path)
            return {}
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_name(f"{self.path.name}.{os.getpid()}.tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(self.path)

    # ------------------------------------------------------------ INTERFACE --

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            self._require_open()
            return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._require_open()
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> bool:
        with self._lock:
            self._require_open()
            data = self._read()
            if key not in data:
                return False
            del data[key]
            self._write(data)
            return True

    def append(self, key: str, item: Any, limit: Optional[int] = None) -> List[Any]:
        """Append to the list stored under `key`, keeping only the last `limit` items."""
        with self._lock:
            self._require_open()
            data = self._read()
            items = data.get(key)
            if not isinstance(items, list):
                items = []
            items.append(item)
            if limit is not None and len(items) > limit:
                items = items[-limit:]
            data[key] = items
            self._write(data)
            return list(items)

