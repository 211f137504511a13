"""
EMM backend client.

Thin wrapper around `httpx` for the device-profile endpoints: the application
list (daily limits per package), the device command, and the JSON POST used by
the usage reporter.
"""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from usage_agent import VERSION
from usage_agent.config import (
    DEFAULT_DAILY_LIMIT_MINUTES,
    AgentConfig,
    ConfigurationError,
    mask_token,
)
from usage_agent.models import ApplicationEntry

APPLICATION_LIST_PATH = "/admin/device-profile/application/list"
USAGE_CREATE_PATH = "/kids/application/usage/create"
DEVICE_COMMAND_PATH = "/admin/device-profile/command"


class BackendError(RuntimeError):
    """The backend could not be reached or returned an unusable response."""


@dataclass
class CommandResult:
    success: bool
    message: Optional[str] = None


def normalize_daily_limit(raw: Any, default: int = DEFAULT_DAILY_LIMIT_MINUTES) -> int:
    """Coerce `dailyLimitTimeNumber` into positive minutes.

    Older API versions send a string, newer ones an int, and unconfigured apps
    send null or omit the field. Anything that is not a positive number falls
    back to `default`.
    """
    if raw is None or isinstance(raw, bool):
        return default
    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return default
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _as_int(raw: Any) -> int:
    if raw is None or isinstance(raw, bool):
        return 0
    try:
        return max(0, int(float(raw)))
    except (TypeError, ValueError):
        return 0


def parse_application_list(
    payload: Any, default_limit: int = DEFAULT_DAILY_LIMIT_MINUTES
) -> List[ApplicationEntry]:
    if isinstance(payload, dict):
        rows = payload.get("applications")
        if rows is None:
            rows = payload.get("data")
    else:
        rows = payload
    if not isinstance(rows, list):
        raise BackendError("Unable to decode application list response")

    logger = logging.getLogger("emm-usage-agent.api")
    entries = []
    for row in rows:
        if not isinstance(row, dict):
            logger.warning("Skipping application row %r", row)
            continue
        package = row.get("package_name") or row.get("packageName")
        if not isinstance(package, str) or not package.strip():
            logger.warning("Skipping application row without package name: %r", row)
            continue
        display = row.get("display_text")
        entries.append(
            ApplicationEntry(
                package_name=package.strip(),
                daily_limit_minutes=normalize_daily_limit(
                    row.get("dailyLimitTimeNumber"), default_limit
                ),
                used_limit=_as_int(row.get("usedLimit")),
                display_text=display if isinstance(display, str) and display else None,
            )
        )
    return entries


class BackendClient:
    def __init__(self, config: AgentConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        self.logger = logging.getLogger("emm-usage-agent.api")
        self._client = httpx.Client(
            base_url=config.api_base_url,
            timeout=config.request_timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "User-Agent": f"emm-usage-agent/{VERSION}",
            },
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "BackendClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _auth_headers(self) -> Dict[str, str]:
        token = self.config.authorization
        if not token:
            return {}
        if " " not in token:
            token = f"Bearer {token}"
        return {"Authorization": token}

    def _require_profile(self) -> None:
        if not self.config.profile_id:
            raise ConfigurationError("Profile ID is not set in managed configuration")
        if not self.config.authorization:
            raise ConfigurationError("Authorization token is not set in managed configuration")

    # ------------------------------------------------------------ REQUESTS --

    def post_json(self, path: str, payload: Dict[str, Any], params=None) -> httpx.Response:
        """POST `payload`; transport failures propagate as `httpx.HTTPError`."""
        self.logger.debug("POST %s (auth %s)", path, mask_token(self.config.authorization))
        return self._client.post(
            path, json=payload, params=params, headers=self._auth_headers()
        )

    def fetch_application_list(self) -> List[ApplicationEntry]:
        self._require_profile()
        self.logger.info("Fetching application list for profile %s", self.config.profile_id)
        try:
            response = self._client.get(
                APPLICATION_LIST_PATH,
                params={"profile_id": self.config.profile_id, "type": "GET"},
                headers=self._auth_headers(),
            )
        except httpx.HTTPError as exc:
            raise BackendError(f"Network error: {exc}") from exc

        if not response.is_success:
            self.logger.error(
                "Application list request failed (HTTP %s): %s",
                response.status_code,
                response.text[:500],
            )
            raise BackendError(f"Server error: HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendError("Unable to decode application list response") from exc

        entries = parse_application_list(payload, self.config.default_daily_limit)
        self.logger.info("Received %s applications from the backend.", len(entries))
        for entry in entries:
            self.logger.info(
                "  %-40s %-28s %4s min limit, %4s min used",
                entry.package_name,
                entry.display_name[:28],
                entry.daily_limit_minutes,
                entry.used_limit,
            )
        return entries

    def send_device_command(self, command: str = "YES") -> CommandResult:
        self._require_profile()
        body = {
            "command": command,
            "deviceName": platform.node(),
            "deviceModel": platform.machine(),
            "systemVersion": platform.platform(),
            "serialNumber": self.config.serial_number,
            "timestamp": datetime.now().astimezone().isoformat(),
        }
        try:
            response = self.post_json(
                DEVICE_COMMAND_PATH,
                body,
                params={"profile_id": self.config.profile_id, "type": command},
            )
        except httpx.HTTPError as exc:
            self.logger.error("Network error sending %s command: %s", command, exc)
            return CommandResult(False, f"Network error: {exc}")

        if not response.is_success:
            self.logger.error("%s command failed (HTTP %s)", command, response.status_code)
            return CommandResult(False, f"Server error: HTTP {response.status_code}")

        try:
            decoded = response.json()
        except ValueError:
            decoded = None
        if not isinstance(decoded, dict) or not isinstance(decoded.get("success"), bool):
            self.logger.info("%s command sent (assumed success from HTTP status).", command)
            return CommandResult(True, f"{command} command sent successfully")

        message = decoded.get("message")
        if decoded["success"]:
            self.logger.info("%s command sent successfully: %s", command, message or "")
            return CommandResult(True, message or f"{command} command sent successfully")
        self.logger.error("%s command rejected: %s", command, message or "")
        return CommandResult(False, message or "Command failed")
