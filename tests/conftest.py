from datetime import datetime, timedelta, timezone

import httpx
import pytest

from usage_agent.config import AgentConfig
from usage_agent.storage import SharedStore

TZ = timezone(timedelta(hours=2))


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2025, 3, 10, 9, 0, tzinfo=TZ)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeBridge:
    """Stands in for the MQTT bridge as scheduler and shield enforcer."""

    def __init__(self):
        self.plans = []
        self.stopped = []
        self.shield_calls = []
        self.unshield_calls = []
        self.connected = False

    def start_monitoring(self, plan):
        self.plans.append(plan)

    def stop_monitoring(self, names):
        self.stopped.append(list(names))

    def apply_shield(self, package, tokens):
        self.shield_calls.append((package, list(tokens)))

    def remove_shield(self, package):
        self.unshield_calls.append(package)

    def connect(self):
        self.connected = True
        return True

    def disconnect(self):
        self.connected = False


class RecordingBackend:
    """httpx MockTransport handler that records requests."""

    def __init__(self, status=200, body=None, content=None):
        self.status = status
        self.body = {"success": True} if body is None else body
        self.content = content
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if self.content is not None:
            return httpx.Response(self.status, content=self.content)
        return httpx.Response(self.status, json=self.body)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    shared = SharedStore(tmp_path / "shared.json").open()
    yield shared
    shared.close()


@pytest.fixture
def config(tmp_path):
    return AgentConfig(
        mqtt_host="broker.local",
        device_id="ipad-7",
        topic_prefix="emm/ipad-7",
        email="parent@example.com",
        profile_id="profile-1",
        serial_number="SERIAL123",
        authorization="token-abc",
        api_base_url="https://emm.example.com/api/v1",
        state_path=tmp_path / "shared.json",
    )


@pytest.fixture
def bridge():
    return FakeBridge()
