"""
MQTT bridge to the monitoring host and the shield enforcer.

The host publishes threshold and interval notifications; the agent publishes
activity plans (what to monitor) and shield state (what to block) as retained
messages so a restarted host picks up the current state.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt

from usage_agent import VERSION
from usage_agent.config import AgentConfig
from usage_agent.handler import parse_event_name, parse_stride_event
from usage_agent.models import (
    EventKind,
    HostEvent,
    IntervalChanged,
    StrideCrossed,
    ThresholdCrossed,
)
from usage_agent.monitoring import ActivityPlan


def _now_local() -> datetime:
    return datetime.now().astimezone()


def _occurred_at(data: Dict[str, Any]) -> datetime:
    raw = data.get("occurred_at")
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(float(raw)).astimezone()
    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return _now_local()
        return parsed if parsed.tzinfo else parsed.astimezone()
    return _now_local()


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"`{name}` must be a positive number, got {value!r}")
    return int(value)


def decode_event_payload(data: Dict[str, Any]) -> HostEvent:
    """Turn a host event message into a typed host event.

    Structured messages carry `type`; older hosts send the raw activity event
    name under `event` (and the activity under `activity`).
    """
    occurred_at = _occurred_at(data)
    if "event" in data and "type" not in data:
        name = str(data["event"])
        activity = str(data.get("activity", ""))
        stride = parse_stride_event(name, activity, occurred_at)
        if stride is not None:
            return stride
        package, minutes, kind = parse_event_name(name)
        return ThresholdCrossed(package, minutes, kind, occurred_at)

    event_type = data.get("type", "threshold")
    if event_type == "stride":
        package = data.get("package")
        if not isinstance(package, str) or not package:
            raise ValueError("stride event is missing `package`")
        block_hour = data.get("block_hour")
        if isinstance(block_hour, bool) or not isinstance(block_hour, int) or not 0 <= block_hour < 24:
            raise ValueError(f"invalid `block_hour`: {block_hour!r}")
        return StrideCrossed(package, block_hour, _positive_int(data.get("minutes"), "minutes"), occurred_at)
    if event_type == "threshold":
        package = data.get("package")
        if package is not None and (not isinstance(package, str) or not package):
            raise ValueError("`package` must be a non-empty string")
        kind = EventKind(data.get("kind", EventKind.THRESHOLD.value))
        return ThresholdCrossed(package, _positive_int(data.get("minutes"), "minutes"), kind, occurred_at)
    raise ValueError(f"unknown event type {event_type!r}")


def decode_interval_payload(data: Dict[str, Any]) -> IntervalChanged:
    activity = data.get("activity")
    phase = str(data.get("phase", "")).lower()
    if not isinstance(activity, str) or not activity:
        raise ValueError("interval message is missing `activity`")
    if phase not in {"start", "end"}:
        raise ValueError(f"invalid interval phase {phase!r}")
    return IntervalChanged(activity, phase, _occurred_at(data))


class HostBridge:
    def __init__(
        self,
        config: AgentConfig,
        on_event: Callable[[HostEvent], Any],
        client: Optional[mqtt.Client] = None,
    ):
        self.config = config
        self.on_event = on_event
        self.logger = logging.getLogger("emm-usage-agent.mqtt")
        self._client = client or self._build_mqtt_client()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------ MQTT --

    @staticmethod
    def _mqtt_rc_reason(rc: int) -> str:
        rc_map = {
            0: "success",
            1: "incorrect protocol version",
            2: "invalid client identifier",
            3: "server unavailable",
            4: "bad username or password",
            5: "not authorized",
        }
        return rc_map.get(rc, "unknown")

    @staticmethod
    def _rc_int(reason_code: Any) -> int:
        rc = getattr(reason_code, "value", reason_code)
        try:
            return int(rc)
        except (TypeError, ValueError):
            return -1

    def _build_mqtt_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"emm-usage-agent-{self.config.device_id}",
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if self.config.mqtt_username:
            client.username_pw_set(
                self.config.mqtt_username, password=self.config.mqtt_password or None
            )
        if self.config.mqtt_tls:
            client.tls_set()
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        if self.config.debug_mqtt:
            client.enable_logger(self.logger)
        return client

    def connect(self) -> bool:
        self.logger.info("Connecting to MQTT %s:%s", self.config.mqtt_host, self.config.mqtt_port)
        try:
            self._client.connect_async(self.config.mqtt_host, self.config.mqtt_port, keepalive=60)
        except (OSError, ValueError) as exc:
            self.logger.error(
                "Failed to start MQTT connection to %s:%s: %s",
                self.config.mqtt_host,
                self.config.mqtt_port,
                exc,
            )
            return False
        self._client.loop_start()
        return True

    def disconnect(self) -> None:
        try:
            self._client.loop_stop()
            self._client.disconnect()
        except Exception:
            self.logger.warning("Error while shutting down MQTT.", exc_info=True)
        self._connected = False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        rc = self._rc_int(reason_code)
        if rc != 0:
            self.logger.error("MQTT connection failed (rc=%s: %s)", rc, self._mqtt_rc_reason(rc))
            return
        self.logger.info("Connected to MQTT broker (rc=0: success).")
        self._connected = True
        client.subscribe(self.config.event_topic, qos=1)
        client.subscribe(self.config.interval_topic, qos=1)
        client.publish(
            self.config.status_topic,
            json.dumps({"event": "online", "version": VERSION, "device_id": self.config.device_id}),
            qos=1,
            retain=False,
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        rc = self._rc_int(reason_code)
        self._connected = False
        if rc != 0:
            self.logger.warning("Unexpected MQTT disconnect (rc=%s: %s)", rc, self._mqtt_rc_reason(rc))

    def _on_message(self, client, userdata, message):
        payload = (message.payload or b"").decode("utf-8", errors="ignore")
        try:
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ValueError("message is not a JSON object")
            if message.topic == self.config.interval_topic:
                event = decode_interval_payload(data)
            elif message.topic == self.config.event_topic:
                event = decode_event_payload(data)
            else:
                self.logger.debug("Ignoring message on %s", message.topic)
                return
        except ValueError as exc:
            self.logger.warning("Invalid host payload %r on %s: %s", payload, message.topic, exc)
            return

        try:
            self.on_event(event)
        except Exception:
            self.logger.exception("Failed to handle host event %r", event)

    # ------------------------------------------------------------ SCHEDULER --

    def start_monitoring(self, plan: ActivityPlan) -> None:
        self._client.publish(
            self.config.monitor_topic(plan.name),
            json.dumps(plan.to_payload()),
            qos=1,
            retain=True,
        )
        self.logger.debug("Published plan %s with %s events.", plan.name, len(plan.events))

    def stop_monitoring(self, activity_names: List[str]) -> None:
        for name in activity_names:
            # An empty retained payload clears the plan on the broker.
            self._client.publish(self.config.monitor_topic(name), b"", qos=1, retain=True)

    # ------------------------------------------------------------- ENFORCER --

    def apply_shield(self, package: str, tokens: List[str]) -> None:
        payload = {"shielded": True, "tokens": [t for t in tokens if t]}
        self._client.publish(
            self.config.shield_topic(package), json.dumps(payload), qos=1, retain=True
        )
        self.logger.info("Shield published for %s.", package)

    def remove_shield(self, package: str) -> None:
        self._client.publish(
            self.config.shield_topic(package),
            json.dumps({"shielded": False, "tokens": []}),
            qos=1,
            retain=True,
        )
        self.logger.info("Shield removal published for %s.", package)
