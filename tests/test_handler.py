from datetime import datetime, timezone

import pytest

from usage_agent.event_log import ThresholdEventLog
from usage_agent.handler import (
    ThresholdEventHandler,
    parse_event_name,
    parse_stride_event,
)
from usage_agent.models import (
    EventKind,
    IntervalChanged,
    StrideCrossed,
    ThresholdCrossed,
)
from usage_agent.monitoring import MonitoringRegistry
from usage_agent.storage import running_total_key

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "name, expected",
    [
        ("TabnovaEMM.com.example.app.threshold.10min", ("com.example.app", 10, EventKind.THRESHOLD)),
        ("TabnovaEMM.com.example.app.limit.30min", ("com.example.app", 30, EventKind.LIMIT_REACHED)),
        (
            'DeviceActivityEvent.Name(rawValue: "TabnovaEMM.com.a.threshold.15min")',
            ("com.a", 15, EventKind.THRESHOLD),
        ),
        ("TabnovaEMM.threshold.15min", (None, 15, EventKind.THRESHOLD)),
        ("TabnovaEMM.com.a.threshold.soonmin", ("com.a", 5, EventKind.THRESHOLD)),
        ("TabnovaEMM.com.a.threshold.0min", ("com.a", 5, EventKind.THRESHOLD)),
        ("garbage", (None, 5, EventKind.THRESHOLD)),
    ],
)
def test_parse_event_name(name, expected):
    assert parse_event_name(name) == expected


def test_parse_stride_event():
    event = parse_stride_event("Usage.Hour6.Min25", "TabnovaEMM.com.example.app.Hour6", T0)
    assert event == StrideCrossed("com.example.app", 6, 25, T0)
    assert parse_stride_event("Usage.Hour6.Min25", "TabnovaEMM.com.example.app") is None


@pytest.fixture
def registry(store, bridge, config):
    return MonitoringRegistry(store, bridge, config)


@pytest.fixture
def log(store):
    return ThresholdEventLog(store)


@pytest.fixture
def handler(store, registry, log):
    return ThresholdEventHandler(store, registry, log)


def test_attributed_threshold(handler, registry, log):
    registry.start_monitoring("com.example.app", 10, token="tok-1")
    wakes = []
    handler.on_appended = lambda: wakes.append(True)

    assert handler.handle(ThresholdCrossed("com.example.app", 5, EventKind.THRESHOLD, T0)) == 1

    [event] = log.drain()
    assert (event.package_identifier, event.cumulative_minutes) == ("com.example.app", 5)
    assert wakes == [True]


def test_unattributed_threshold_fans_out(handler, registry, log):
    registry.start_monitoring("com.a", 10, token="tok-a")
    registry.start_monitoring("com.b", 30, token="tok-b")

    assert handler.handle(ThresholdCrossed(None, 5, EventKind.THRESHOLD, T0)) == 2
    assert sorted(e.package_identifier for e in log.drain()) == ["com.a", "com.b"]


def test_unattributed_threshold_without_apps(handler, log, caplog):
    assert handler.handle(ThresholdCrossed(None, 5, EventKind.THRESHOLD, T0)) == 0
    assert log.drain() == []
    assert "no monitored applications are configured" in caplog.text


def test_unknown_event_type(handler):
    with pytest.raises(TypeError):
        handler.handle("TabnovaEMM.com.a.threshold.5min")


def test_stride_running_total(handler, store, log):
    activity = "TabnovaEMM.com.example.app.Hour0"
    handler.handle(StrideCrossed("com.example.app", 0, 5, T0))
    handler.handle(StrideCrossed("com.example.app", 0, 10, T0))
    handler.handle(IntervalChanged(activity, "end"))
    assert store.get(running_total_key("com.example.app")) == 10

    handler.handle(StrideCrossed("com.example.app", 2, 5, T0))
    assert [e.cumulative_minutes for e in log.drain()] == [5, 10, 15]

    handler.handle(IntervalChanged("TabnovaEMM.com.example.app.Hour2", "start"))
    assert store.get(running_total_key("com.example.app")) == 10
    handler.handle(IntervalChanged(activity, "start"))
    assert store.get(running_total_key("com.example.app")) == 0
