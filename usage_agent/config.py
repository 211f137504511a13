from __future__ import annotations

import json
import logging
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from usage_agent import VERSION

DEFAULT_CONFIG_PATH = "/Library/Application Support/emm-usage-agent/config.json"
DEFAULT_STATE_PATH = (
    Path.home() / "Library" / "Application Support" / "emm-usage-agent" / "shared.json"
)
DEFAULT_LOG_PATH = "/tmp/emm_usage_agent.out.log"
DEFAULT_ERR_LOG_PATH = "/tmp/emm_usage_agent.err.log"
DEFAULT_API_BASE_URL = "https://b2b.novaemm.com:4500/api/v1"
DEFAULT_ACTIVITY_PREFIX = "TabnovaEMM"
DEFAULT_DAILY_LIMIT_MINUTES = 10

# Keys pushed by the MDM server in the managed app configuration.
MANAGED_KEYS = {
    "Authorization": "authorization",
    "email": "email",
    "profileId": "profile_id",
    "serialNumber": "serial_number",
}


class ConfigurationError(ValueError):
    """A required configuration value is missing or invalid."""


def _sanitize_device_id(value: str) -> str:
    sanitized = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in value.lower())
    return sanitized or "device"


def mask_token(token: str) -> str:
    if not token:
        return "Not set"
    return "***" + token[-20:]


@dataclass
class AgentConfig:
    mqtt_host: str
    device_id: str
    topic_prefix: str
    email: str = ""
    profile_id: str = ""
    serial_number: str = ""
    authorization: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout_seconds: float = 15.0
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_tls: bool = False
    activity_prefix: str = DEFAULT_ACTIVITY_PREFIX
    monitoring_mode: str = "threshold"  # threshold | stride
    drain_interval_seconds: int = 15
    retention_days: int = 7
    event_log_capacity: int = 50
    default_daily_limit: int = DEFAULT_DAILY_LIMIT_MINUTES
    unshield_at_rollover: bool = False
    client_version: str = VERSION
    state_path: Path = DEFAULT_STATE_PATH
    log_file: str = DEFAULT_LOG_PATH
    err_log_file: str = DEFAULT_ERR_LOG_PATH
    debug_mqtt: bool = False
    managed_config_path: Optional[Path] = None

    @classmethod
    def load(cls, path: Path) -> "AgentConfig":
        if not path.exists():
            raise FileNotFoundError(
                f"Required config file missing at {path}. "
                "Run the installer script to create it."
            )
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError("Config file must contain a JSON object.")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        mqtt_host = str(data.get("mqtt_host", "")).strip()
        if not mqtt_host:
            raise ValueError("Config `mqtt_host` is required.")

        device_id = data.get("device_id")
        if not device_id:
            device_id = platform.node() or "device"
        device_id = _sanitize_device_id(str(device_id))

        topic_prefix = str(data.get("topic_prefix", f"emm/{device_id}")).strip()
        if not topic_prefix:
            raise ValueError("Config `topic_prefix` must not be empty.")

        mqtt_port = int(data.get("mqtt_port", 1883))
        if not (1 <= mqtt_port <= 65535):
            raise ValueError("Config `mqtt_port` must be between 1 and 65535.")

        api_base_url = str(data.get("api_base_url", DEFAULT_API_BASE_URL)).strip()
        if not api_base_url.startswith(("http://", "https://")):
            raise ValueError("`api_base_url` must be an http(s) URL.")

        timeout = float(data.get("request_timeout_seconds", 15.0))
        if timeout <= 0 or timeout > 120:
            raise ValueError("`request_timeout_seconds` must be between 0 and 120.")

        drain_interval = int(data.get("drain_interval_seconds", 15))
        if not (5 <= drain_interval <= 300):
            raise ValueError("`drain_interval_seconds` must be between 5 and 300.")

        monitoring_mode = str(data.get("monitoring_mode", "threshold")).lower()
        if monitoring_mode not in {"threshold", "stride"}:
            raise ValueError("`monitoring_mode` must be threshold or stride.")

        retention_days = int(data.get("retention_days", 7))
        if retention_days < 1:
            raise ValueError("`retention_days` must be at least 1.")

        capacity = int(data.get("event_log_capacity", 50))
        if not (1 <= capacity <= 1000):
            raise ValueError("`event_log_capacity` must be between 1 and 1000.")

        default_limit = int(data.get("default_daily_limit", DEFAULT_DAILY_LIMIT_MINUTES))
        if default_limit <= 0:
            raise ValueError("`default_daily_limit` must be positive.")

        activity_prefix = str(data.get("activity_prefix", DEFAULT_ACTIVITY_PREFIX)).strip()
        if not activity_prefix or "." in activity_prefix:
            raise ValueError("`activity_prefix` must be a non-empty name without dots.")

        state_path = Path(data.get("state_path", str(DEFAULT_STATE_PATH))).expanduser()
        managed_raw = data.get("managed_config_path")
        managed_path = Path(managed_raw).expanduser() if managed_raw else None

        cfg = cls(
            mqtt_host=mqtt_host,
            device_id=device_id,
            topic_prefix=topic_prefix.rstrip("/"),
            email=str(data.get("email", "")).strip(),
            profile_id=str(data.get("profile_id", "")).strip(),
            serial_number=str(data.get("serial_number", "")).strip(),
            authorization=str(data.get("authorization", "")).strip(),
            api_base_url=api_base_url.rstrip("/"),
            request_timeout_seconds=timeout,
            mqtt_port=mqtt_port,
            mqtt_username=data.get("mqtt_username"),
            mqtt_password=data.get("mqtt_password"),
            mqtt_tls=bool(data.get("mqtt_tls", False)),
            activity_prefix=activity_prefix,
            monitoring_mode=monitoring_mode,
            drain_interval_seconds=drain_interval,
            retention_days=retention_days,
            event_log_capacity=capacity,
            default_daily_limit=default_limit,
            unshield_at_rollover=bool(data.get("unshield_at_rollover", False)),
            client_version=str(data.get("client_version", VERSION)),
            state_path=state_path,
            log_file=data.get("log_file", DEFAULT_LOG_PATH),
            err_log_file=data.get("err_log_file", DEFAULT_ERR_LOG_PATH),
            debug_mqtt=bool(data.get("debug_mqtt", False)),
            managed_config_path=managed_path,
        )
        if managed_path is not None:
            cfg.apply_managed_config(managed_path)
        return cfg

    def apply_managed_config(self, path: Path) -> List[str]:
        """Overlay identity fields from an MDM managed configuration file.

        Returns the names of the fields that changed. A missing file means no
        managed configuration was pushed and is not an error.
        """
        logger = logging.getLogger("emm-usage-agent")
        try:
            with path.open("r", encoding="utf-8") as handle:
                managed = json.load(handle)
        except FileNotFoundError:
            logger.info("No managed configuration at %s, using local values.", path)
            return []
        except (OSError, ValueError):
            logger.warning("Failed to read managed configuration %s.", path, exc_info=True)
            return []
        if not isinstance(managed, dict):
            logger.warning("Managed configuration %s is not a JSON object.", path)
            return []

        changed = []
        for managed_key, attr in MANAGED_KEYS.items():
            value = managed.get(managed_key)
            if not isinstance(value, str) or not value.strip():
                continue
            if getattr(self, attr) != value.strip():
                setattr(self, attr, value.strip())
                changed.append(attr)
        if changed:
            logger.info("Managed configuration updated: %s", ", ".join(changed))
        return changed

    def missing_identity_fields(self) -> List[str]:
        missing = []
        if not self.email:
            missing.append("email")
        if not self.profile_id:
            missing.append("profile_id")
        if not self.serial_number:
            missing.append("serial_number")
        return missing

    @property
    def event_topic(self) -> str:
        return f"{self.topic_prefix}/host/event"

    @property
    def interval_topic(self) -> str:
        return f"{self.topic_prefix}/host/interval"

    @property
    def status_topic(self) -> str:
        return f"{self.topic_prefix}/status"

    def monitor_topic(self, activity: str) -> str:
        return f"{self.topic_prefix}/host/monitor/{activity}"

    def shield_topic(self, package: str) -> str:
        return f"{self.topic_prefix}/shield/{package}"
