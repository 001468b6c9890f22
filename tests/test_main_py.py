import pytest
from fastapi.testclient import TestClient

import main
from nac.watcher import Watcher

from fakes import FakeDockerClient, FakeNginx, make_attrs


@pytest.fixture
def watcher(settings):
    client = FakeDockerClient([make_attrs("api", ip="172.18.0.5", labels={"nginx.path": "/api", "nginx.port": "8080"})])
    return Watcher(client, settings, runner=FakeNginx(), sleep=lambda _s: None)


def test_health(watcher, settings):
    client = TestClient(main.create_app(watcher, settings))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "healthy"}


def test_routes_reflect_last_pass(watcher, settings):
    client = TestClient(main.create_app(watcher, settings))
    assert client.get("/routes").json() == []

    watcher.rebuild("startup")
    body = client.get("/routes").json()
    assert body == [
        {
            "name": "api",
            "address": "172.18.0.5",
            "port": 8080,
            "path": "/api",
            "host": None,
            "upstream": "api_backend",
        }
    ]


def test_status_without_probe(watcher, settings):
    watcher.rebuild("startup")
    client = TestClient(main.create_app(watcher, settings))
    body = client.get("/status", params={"probe": "false"}).json()
    assert body["phase"] == "idle"
    assert body["passes_run"] == 1
    assert body["route_count"] == 1
    assert body["reload_pending"] is False
    assert body["network"] == "app-network"
    assert body["last_pass"]["outcome"] == "promoted"
    assert body["proxy"] is None


def test_status_probes_proxy(watcher, settings, monkeypatch):
    monkeypatch.setattr(main, "check_proxy_health", lambda url: (False, "No response", 1.5))
    client = TestClient(main.create_app(watcher, settings))
    body = client.get("/status").json()
    assert body["proxy"] == {"url": settings.proxy_health_url, "healthy": False, "message": "No response", "latency_ms": 1.5}
    assert body["last_pass"] is None


def test_passes_and_events_come_from_journal(watcher, settings):
    watcher.rebuild("startup")
    client = TestClient(main.create_app(watcher, settings))
    passes = client.get("/passes", params={"limit": 5}).json()
    assert passes[0]["trigger"] == "startup"
    assert passes[0]["outcome"] == "promoted"
    events = client.get("/events").json()
    assert any("Applied configuration" in e["message"] for e in events)


def test_manual_rebuild_is_queued(watcher, settings):
    client = TestClient(main.create_app(watcher, settings))
    r = client.post("/rebuild", json={"reason": "operator"})
    assert r.status_code == 202
    assert watcher.mailbox.pending().reason == "api:operator"
    assert client.get("/status", params={"probe": "false"}).json()["rebuild_queued"] is True


def test_manual_rebuild_without_watcher(settings):
    client = TestClient(main.create_app(None, settings))
    assert client.post("/rebuild").status_code == 503
