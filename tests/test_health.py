from types import SimpleNamespace

from vent_bridge.adapters.mqtt import SessionState
from vent_bridge.connection import SessionRole
from vent_bridge.health import HealthReporter


def test_health_reporter_snapshot():
    reporter = HealthReporter()

    reporter.update("ingest", True)
    reporter.update("relay", False, "disconnected: rc=7")

    snapshot = reporter.snapshot()

    assert snapshot["status"] == "degraded"
    component_list = snapshot.get("components", [])
    assert isinstance(component_list, list)
    components = {item["name"]: item for item in component_list}
    assert components["ingest"]["healthy"] is True
    assert components["relay"]["healthy"] is False
    assert components["relay"]["detail"] == "disconnected: rc=7"
    assert "counters" not in snapshot


def test_session_listener_maps_states():
    reporter = HealthReporter(counters=lambda: {"telemetry_dropped": 3})
    manager = SimpleNamespace(role=SessionRole.INGEST)

    reporter.session_listener(manager, SessionState.CONNECTING, None)
    assert reporter.snapshot()["status"] == "degraded"

    reporter.session_listener(manager, SessionState.CONNECTED, "Thing-Server-1")
    snapshot = reporter.snapshot()

    assert snapshot["status"] == "ok"
    assert snapshot["components"][0]["detail"] == "connected: Thing-Server-1"
    assert snapshot["counters"] == {"telemetry_dropped": 3}
