import pytest
from fastapi.testclient import TestClient

from conftest import FakeSupervisor, make_app

from rainbowd.control import create_control_app
from rainbowd.registry import AppNotFound, AppRegistry

SLOW_WARMUP = {"type": "WarmupTimer", "durationMs": 60000}


@pytest.fixture
def registry():
    apps = [
        make_app(name="web", port=7000, cutover=SLOW_WARMUP),
        make_app(name="api", port=7100, backendLimit=1, cutover=SLOW_WARMUP),
    ]
    return AppRegistry(apps, supervisor=FakeSupervisor())


def test_list_apps(registry):
    with TestClient(create_control_app(registry)) as client:
        r = client.get("/")
    assert r.status_code == 200
    assert r.json() == {"apps": ["api", "web"]}


def test_redeploy_returns_immediately(registry):
    with TestClient(create_control_app(registry)) as client:
        r = client.post("/web/redeploy")
        assert r.status_code == 202
        body = r.json()
        assert body["app"] == "web"
        assert body["message"] == "Redeploying..."
        assert body["deployment"]

        st = client.get("/web").json()
        # the warmup has not elapsed, so nothing is serving yet
        assert st["liveBackendCount"] == 1
        assert st["activePort"] is None
        assert st["backends"][0]["state"] == "warming"
        assert st["deployments"][0]["id"] == body["deployment"]
        assert st["deployments"][0]["state"] == "running"


def test_redeploy_over_limit_starts_nothing(registry):
    with TestClient(create_control_app(registry)) as client:
        assert client.post("/api/redeploy").json()["deployment"]
        r = client.post("/api/redeploy")
        assert r.status_code == 202
        assert r.json() == {"app": "api", "message": "Redeploy not started (see events)", "deployment": None}
        assert client.get("/api").json()["liveBackendCount"] == 1

        events = client.get("/events", params={"app": "api"}).json()
    assert any("limit is 1" in e["message"] for e in events)
    assert all(e["app"] == "api" for e in events)


def test_status_does_not_change_state(registry):
    with TestClient(create_control_app(registry)) as client:
        client.post("/web/redeploy")
        first = client.get("/web").json()
        for _ in range(3):
            assert client.get("/web").json() == first
    assert len(registry.supervisor.spawned) == 1


def test_unknown_app_is_404(registry):
    with TestClient(create_control_app(registry)) as client:
        assert client.get("/nope").status_code == 404
        assert client.post("/nope/redeploy").status_code == 404
    assert registry.supervisor.spawned == []


def test_events_limit(registry):
    with TestClient(create_control_app(registry)) as client:
        client.post("/web/redeploy")
        client.post("/api/redeploy")
        assert len(client.get("/events", params={"limit": 1}).json()) == 1
        assert client.get("/events", params={"limit": 0}).status_code == 422


def test_registry_rejects_duplicates_and_unknown_names(registry):
    with pytest.raises(AppNotFound):
        registry.lookup("missing")
    with pytest.raises(ValueError):
        registry.add(registry.lookup("web"))
