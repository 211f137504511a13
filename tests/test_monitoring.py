import pytest

from usage_agent.models import ApplicationEntry, EventKind
from usage_agent.monitoring import (
    MonitoringRegistry,
    build_stride_plans,
    build_threshold_plan,
    threshold_minutes,
)
from usage_agent.storage import monitored_selection_key, running_total_key


@pytest.fixture
def registry(store, bridge, config):
    return MonitoringRegistry(store, bridge, config)


@pytest.mark.parametrize(
    "limit, expected",
    [
        (5, []),
        (10, [5]),
        (15, [5, 10]),
        (60, [5, 10, 15, 30, 45]),
    ],
)
def test_threshold_minutes(limit, expected):
    assert threshold_minutes(limit) == expected


def test_threshold_minutes_are_capped():
    assert len(threshold_minutes(1000)) == 12


def test_threshold_plan():
    plan = build_threshold_plan("TabnovaEMM", "com.example.app", 20, "tok-1")
    assert plan.name == "TabnovaEMM.com.example.app"
    assert plan.tokens == ["tok-1"]
    assert [e.name for e in plan.events] == [
        "TabnovaEMM.com.example.app.threshold.5min",
        "TabnovaEMM.com.example.app.threshold.10min",
        "TabnovaEMM.com.example.app.threshold.15min",
        "TabnovaEMM.com.example.app.limit.20min",
    ]
    assert plan.events[-1].kind is EventKind.LIMIT_REACHED
    payload = plan.to_payload()
    assert payload["schedule"] == {"start": "00:00", "end": "23:59", "repeats": True}
    assert payload["events"][-1] == {
        "name": "TabnovaEMM.com.example.app.limit.20min",
        "minutes": 20,
        "kind": "limit",
    }


def test_stride_plans_cover_the_day():
    plans = build_stride_plans("TabnovaEMM", "com.example.app", "tok-1")
    assert len(plans) == 12
    assert plans[0].name == "TabnovaEMM.com.example.app.Hour0"
    assert (plans[0].start, plans[0].end) == ("00:00", "01:59")
    assert (plans[-1].start, plans[-1].end) == ("22:00", "23:59")
    assert plans[3].events[0].name == "Usage.Hour6.Min5"
    assert plans[3].events[-1].minutes == 120
    assert len(plans[3].events) == 24


def test_start_without_token(registry, bridge, caplog):
    assert registry.start_monitoring("com.example.app", 10) is False
    assert bridge.plans == []
    assert registry.is_empty()
    assert "no app selection token" in caplog.text


def test_start_with_registered_token(registry, bridge):
    registry.register_token("com.example.app", "tok-1")
    assert registry.start_monitoring("com.example.app", 10) is True

    app = registry.get("com.example.app")
    assert app.daily_limit_minutes == 10
    assert app.token == "tok-1"
    assert registry.packages() == ["com.example.app"]
    assert bridge.plans[0].name == "TabnovaEMM.com.example.app"
    # Any previous schedule for the app is cleared first.
    assert "TabnovaEMM.com.example.app" in bridge.stopped[0]


def test_register_empty_token(registry):
    with pytest.raises(ValueError):
        registry.register_token("com.example.app", "")


def test_stop_is_idempotent(registry, bridge, store):
    registry.start_monitoring("com.example.app", 10, token="tok-1")
    assert registry.stop_monitoring("com.example.app") is True
    assert registry.stop_monitoring("com.example.app") is False
    assert registry.get("com.example.app") is None
    assert store.get(monitored_selection_key("com.example.app")) is None
    assert registry.is_empty()


def test_stride_mode_resets_running_total_on_first_start(store, bridge, config):
    config.monitoring_mode = "stride"
    registry = MonitoringRegistry(store, bridge, config)
    store.set(running_total_key("com.example.app"), 40)

    registry.start_monitoring("com.example.app", 60, token="tok-1")
    assert store.get(running_total_key("com.example.app")) == 0
    assert len(bridge.plans) == 12

    store.set(running_total_key("com.example.app"), 25)
    registry.start_monitoring("com.example.app", 90)
    assert store.get(running_total_key("com.example.app")) == 25


def test_sync_limits(registry, bridge):
    registry.start_monitoring("com.a", 10, token="tok-a")
    registry.start_monitoring("com.b", 20, token="tok-b")
    registry.register_token("com.c", "tok-c")
    bridge.plans.clear()

    changes = registry.sync_limits(
        [
            ApplicationEntry("com.a", 10),
            ApplicationEntry("com.b", 45),
            ApplicationEntry("com.c", 30),
            ApplicationEntry("com.unknown", 15),
        ]
    )

    assert [(c.package, c.old_limit, c.new_limit) for c in changes] == [("com.b", 20, 45)]
    assert registry.get("com.b").daily_limit_minutes == 45
    assert registry.get("com.c").daily_limit_minutes == 30
    assert registry.get("com.unknown") is None
    assert sorted(p.package for p in bridge.plans) == ["com.b", "com.c"]


def test_apps_lists_monitored_apps(registry, store):
    registry.start_monitoring("com.b", 20, token="tok-b")
    registry.start_monitoring("com.a", 10, token="tok-a")
    store.set("shieldedApps", ["com.b"])

    apps = registry.apps()

    assert [(a.package_identifier, a.daily_limit_minutes, a.shielded) for a in apps] == [
        ("com.a", 10, False),
        ("com.b", 20, True),
    ]
