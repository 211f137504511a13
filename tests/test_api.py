import json

import httpx
import pytest
from conftest import RecordingBackend

from usage_agent.api import (
    BackendClient,
    BackendError,
    normalize_daily_limit,
    parse_application_list,
)
from usage_agent.config import ConfigurationError


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0", 10),
        (None, 10),
        (0, 10),
        ("", 10),
        ("abc", 10),
        (-5, 10),
        (True, 10),
        ("15", 15),
        (30, 30),
        (12.0, 12),
    ],
)
def test_normalize_daily_limit(raw, expected):
    assert normalize_daily_limit(raw) == expected


def test_absent_limit_defaults():
    entries = parse_application_list({"applications": [{"package_name": "com.a"}]})
    assert entries[0].daily_limit_minutes == 10


def test_parse_accepts_data_key_and_bare_list():
    rows = [{"package_name": "com.a", "dailyLimitTimeNumber": "20", "usedLimit": None}]
    assert parse_application_list({"data": rows})[0].daily_limit_minutes == 20
    entry = parse_application_list(rows)[0]
    assert entry.used_limit == 0
    assert entry.display_name == "A"


def test_parse_skips_rows_without_package():
    entries = parse_application_list(
        {"applications": [{"dailyLimitTimeNumber": 5}, {"package_name": "com.b", "display_text": "Bee"}]}
    )
    assert [e.package_name for e in entries] == ["com.b"]
    assert entries[0].display_name == "Bee"


def test_parse_rejects_unknown_shape():
    with pytest.raises(BackendError):
        parse_application_list({"unexpected": True})


def test_fetch_application_list_request(config):
    backend = RecordingBackend(
        body={"applications": [{"package_name": "com.a", "dailyLimitTimeNumber": 25}]}
    )
    client = BackendClient(config, transport=httpx.MockTransport(backend))
    entries = client.fetch_application_list()

    assert entries[0].daily_limit_minutes == 25
    request = backend.requests[0]
    assert request.method == "GET"
    assert request.url.path == "/api/v1/admin/device-profile/application/list"
    assert request.url.params["profile_id"] == "profile-1"
    assert request.headers["Authorization"] == "Bearer token-abc"


def test_fetch_requires_profile_id(config):
    config.profile_id = ""
    backend = RecordingBackend()
    client = BackendClient(config, transport=httpx.MockTransport(backend))
    with pytest.raises(ConfigurationError, match="Profile ID is not set"):
        client.fetch_application_list()
    assert backend.requests == []


def test_fetch_server_error(config):
    client = BackendClient(config, transport=httpx.MockTransport(RecordingBackend(status=500)))
    with pytest.raises(BackendError):
        client.fetch_application_list()


def test_fetch_network_error(config):
    def fail(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = BackendClient(config, transport=httpx.MockTransport(fail))
    with pytest.raises(BackendError):
        client.fetch_application_list()


def test_scheme_in_token_is_kept(config):
    config.authorization = "Token abc"
    backend = RecordingBackend(body=[])
    BackendClient(config, transport=httpx.MockTransport(backend)).fetch_application_list()
    assert backend.requests[0].headers["Authorization"] == "Token abc"


def test_device_command(config):
    backend = RecordingBackend(body={"success": True, "message": "queued"})
    client = BackendClient(config, transport=httpx.MockTransport(backend))
    result = client.send_device_command()

    assert result.success is True
    assert result.message == "queued"
    request = backend.requests[0]
    assert request.method == "POST"
    assert request.url.params["type"] == "YES"
    assert json.loads(request.content)["serialNumber"] == "SERIAL123"


def test_device_command_undecodable_body_is_success(config):
    backend = RecordingBackend(content=b"OK")
    client = BackendClient(config, transport=httpx.MockTransport(backend))
    assert client.send_device_command().success is True


def test_device_command_rejected(config):
    backend = RecordingBackend(body={"success": False, "message": "unknown device"})
    client = BackendClient(config, transport=httpx.MockTransport(backend))
    result = client.send_device_command()
    assert result.success is False
    assert result.message == "unknown device"
