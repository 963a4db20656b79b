import pytest

from fastapi import FastAPI
from starlette.testclient import TestClient

from mcsupervisor.routers.probe import MAX_BATCH_TARGETS, router as probe_router
from mcsupervisor.services import status_probe
from mcsupervisor.services.status_probe import ProbeResult


def _make_app() -> FastAPI:
    app = FastAPI()
    app.include_router(probe_router)
    return app


def test_probe_returns_result(monkeypatch):
    calls = []

    async def _fake_probe(host, port=25565, timeout=None):
        calls.append((host, port, timeout))
        return ProbeResult(host=host, port=port, protocol_used="java", online=True,
                           players_online=2, players_max=20, version_name="1.20.4", latency_ms=12.5)

    monkeypatch.setattr(status_probe, "probe_external", _fake_probe)
    client = TestClient(_make_app())

    resp = client.get("/api/probe?host=mc.example.org&timeout=2")

    assert resp.status_code == 200
    result = resp.json()["result"]
    assert result["protocol_used"] == "java"
    assert result["players_online"] == 2
    assert calls == [("mc.example.org", 25565, 2.0)]


@pytest.mark.parametrize("port", [0, 70000])
def test_probe_rejects_bad_port(port):
    client = TestClient(_make_app())
    resp = client.get(f"/api/probe?host=mc.example.org&port={port}")
    assert resp.status_code == 400


def test_latency_endpoint(monkeypatch):
    async def _fake_latency(host, port=25565, timeout=None):
        return -1

    monkeypatch.setattr(status_probe, "ping_latency", _fake_latency)
    client = TestClient(_make_app())

    resp = client.get("/api/probe/latency?host=down.example.org")

    assert resp.json()["latency_ms"] == -1


def test_batch_probe(monkeypatch):
    async def _fake_many(targets, timeout=None):
        return [{**t, "status": {"online": False}} for t in targets]

    monkeypatch.setattr(status_probe, "probe_many", _fake_many)
    client = TestClient(_make_app())

    resp = client.post("/api/probe/batch", json={"servers": [{"host": "a"}, {"host": "b", "port": 19132}]})

    assert resp.status_code == 200
    assert resp.json()["count"] == 2
    assert resp.json()["results"][1]["port"] == 19132


@pytest.mark.parametrize("body", [
    {},
    {"servers": []},
    {"servers": [{"port": 25565}]},
    {"servers": [{"host": "a"}] * (MAX_BATCH_TARGETS + 1)},
])
def test_batch_probe_validation(body):
    client = TestClient(_make_app())
    resp = client.post("/api/probe/batch", json=body)
    assert resp.status_code == 400


def test_cache_endpoints(monkeypatch):
    cleared = []
    monkeypatch.setattr(status_probe, "get_cache_stats", lambda: {"size": 0, "ttl_seconds": 30.0, "entries": []})
    monkeypatch.setattr(status_probe, "clear_cache", lambda: cleared.append(True))
    client = TestClient(_make_app())

    assert client.get("/api/probe/cache").json()["cache"]["size"] == 0
    assert client.delete("/api/probe/cache").json() == {"success": True}
    assert cleared == [True]


@pytest.mark.parametrize("body", [
    {"servers": [{"host": "a", "port": "abc"}]},
    {"servers": [{"host": "a", "port": 70000}]},
    {"servers": [{"host": "a", "port": None}]},
    {"servers": [{"host": "a"}], "timeout": "soon"},
    {"servers": [{"host": "a"}], "timeout": -1},
    {"servers": [{"host": 42}]},
])
def test_batch_probe_rejects_bad_port_and_timeout(monkeypatch, body):
    async def _fake_many(targets, timeout=None):
        raise AssertionError("should not be called")

    monkeypatch.setattr(status_probe, "probe_many", _fake_many)
    client = TestClient(_make_app())

    resp = client.post("/api/probe/batch", json=body)

    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_batch_probe_normalizes_port_strings(monkeypatch):
    seen = []

    async def _fake_many(targets, timeout=None):
        seen.append((targets, timeout))
        return [{**t, "status": {"online": False}} for t in targets]

    monkeypatch.setattr(status_probe, "probe_many", _fake_many)
    client = TestClient(_make_app())

    resp = client.post("/api/probe/batch", json={"servers": [{"host": " a ", "port": "19132"}], "timeout": "1.5"})

    assert resp.status_code == 200
    assert seen == [([{"host": "a", "port": 19132}], 1.5)]


@pytest.mark.parametrize("query", ["port=70000", "port=0", "timeout=-2"])
def test_latency_rejects_bad_port_and_timeout(monkeypatch, query):
    async def _fake_latency(host, port=25565, timeout=None):
        raise AssertionError("should not be called")

    monkeypatch.setattr(status_probe, "ping_latency", _fake_latency)
    client = TestClient(_make_app())

    resp = client.get(f"/api/probe/latency?host=mc.example.org&{query}")

    assert resp.status_code == 400
    assert resp.json()["success"] is False
