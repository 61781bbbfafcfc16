from fastapi.testclient import TestClient

from wtr import db
from wtr.api import app, get_manager


def _client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    return TestClient(app)


def teardown_function():
    app.dependency_overrides.clear()


def test_healthz(manager):
    r = _client(manager).get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_environments_lists_published_projects(manager, make_workspace):
    env = manager.start(make_workspace("w/proj-main"))
    manager.start(make_workspace("w/proj-hotfix"))

    client = _client(manager)
    r = client.get("/environments")
    assert r.status_code == 200
    assert [e["project"] for e in r.json()] == ["w-proj-hotfix", "w-proj-main"]

    r = client.get("/environments/w-proj-main")
    assert r.status_code == 200
    body = r.json()
    ports = {s["service"]: s["port"] for s in body["services"]}
    assert ports == env.allocation.ports
    assert body["workspace"] == env.workspace


def test_unknown_environment_is_404(manager):
    r = _client(manager).get("/environments/nope")
    assert r.status_code == 404


def test_events(manager):
    db.log_event("INFO", "hello", project="w-proj-main")
    db.log_event("WARN", "other", project="x")
    r = _client(manager).get("/events", params={"project": "w-proj-main"})
    assert r.status_code == 200
    assert [e["message"] for e in r.json()] == ["hello"]
