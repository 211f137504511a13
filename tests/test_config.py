import json

import pytest

from usage_agent.config import AgentConfig, mask_token


def write_config(tmp_path, **values):
    data = {"mqtt_host": "broker.local", "device_id": "My iPad"}
    data.update(values)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_defaults(tmp_path):
    cfg = AgentConfig.load(write_config(tmp_path))
    assert cfg.device_id == "my-ipad"
    assert cfg.topic_prefix == "emm/my-ipad"
    assert cfg.event_topic == "emm/my-ipad/host/event"
    assert cfg.default_daily_limit == 10
    assert cfg.retention_days == 7
    assert cfg.event_log_capacity == 50
    assert cfg.monitoring_mode == "threshold"
    assert cfg.unshield_at_rollover is False


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        AgentConfig.load(tmp_path / "absent.json")


def test_mqtt_host_required(tmp_path):
    with pytest.raises(ValueError):
        AgentConfig.load(write_config(tmp_path, mqtt_host=""))


@pytest.mark.parametrize(
    "values",
    [
        {"mqtt_port": 0},
        {"drain_interval_seconds": 1},
        {"monitoring_mode": "hourly"},
        {"api_base_url": "ftp://emm"},
        {"event_log_capacity": 0},
        {"activity_prefix": "a.b"},
    ],
)
def test_invalid_values_rejected(tmp_path, values):
    with pytest.raises(ValueError):
        AgentConfig.load(write_config(tmp_path, **values))


def test_managed_configuration_overrides_identity(tmp_path):
    managed = tmp_path / "managed.json"
    managed.write_text(
        json.dumps({"Authorization": "mdm-token", "profileId": "p-9", "email": " "}),
        encoding="utf-8",
    )
    cfg = AgentConfig.load(
        write_config(
            tmp_path,
            email="local@example.com",
            profile_id="p-1",
            managed_config_path=str(managed),
        )
    )
    assert cfg.authorization == "mdm-token"
    assert cfg.profile_id == "p-9"
    assert cfg.email == "local@example.com"


def test_missing_managed_file_is_ignored(tmp_path):
    cfg = AgentConfig.load(
        write_config(tmp_path, profile_id="p-1", managed_config_path=str(tmp_path / "none.json"))
    )
    assert cfg.profile_id == "p-1"


def test_missing_identity_fields(config):
    config.email = ""
    config.serial_number = ""
    assert config.missing_identity_fields() == ["email", "serial_number"]


def test_mask_token():
    assert mask_token("") == "Not set"
    assert mask_token("x" * 30).startswith("***")
    assert len(mask_token("x" * 30)) == 23
