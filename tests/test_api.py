from pathlib import Path

import pytest
import yaml
from fastapi.testclient import TestClient

from fuelsched.api.main import app
from fuelsched.errors import ConfigError

REPO_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = REPO_ROOT / "config"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("FUELSCHED_RUNTIME_CONFIG", str(CONFIG_DIR / "runtime.yaml"))
    monkeypatch.setenv("FUELSCHED_LOGGING_CONFIG", str(CONFIG_DIR / "logging.yaml"))
    monkeypatch.setenv("FUELSCHED_LIMITS_CONFIG", str(CONFIG_DIR / "limits.yaml"))
    with TestClient(app) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "engine": "simulated", "loaded": [0, 1], "failed": {}}


def test_list_and_get_partitions(client):
    r = client.get("/partitions")
    assert r.status_code == 200
    names = [p["name"] for p in r.json()["partitions"]]
    assert names == ["fib-yielding", "fib-unbounded"]

    r = client.get("/partitions/1")
    assert r.status_code == 200
    partition = r.json()["partition"]
    assert partition["state"] == "idle"
    assert partition["fuel_remaining"] == 10_000_000
    assert partition["yield_after"] is None


def test_invalid_partition_id(client):
    r = client.get("/partitions/7")
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_ID"


def test_step_rotates_on_yield(client):
    r = client.post("/scheduler/step")
    assert r.status_code == 200
    assert r.json()["result"]["status"] == "yielded"
    assert r.json()["result"]["partition_id"] == 0

    r = client.post("/scheduler/step")
    result = r.json()["result"]
    assert (result["partition_id"], result["status"], result["results"]) == (1, "completed", [55])

    status = client.get("/scheduler").json()
    assert status["ring"] == [0]
    assert status["cycle"] == 2


def test_inject_while_in_flight_conflicts(client):
    client.post("/scheduler/step")
    r = client.post("/partitions/0/fuel", json={})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "CONFLICT"
    assert body["partition_id"] == 0
    assert body["phase"] == "inject"


def test_inject_fuel_with_policy(client):
    r = client.post("/partitions/1/fuel", json={"policy": "fixed_quantum", "quantum": 50, "budget": 20_000_000})
    assert r.status_code == 200
    assert r.json() == {"amount": 20_000_000, "yield_after": 50}

    partition = client.get("/partitions/1").json()["partition"]
    assert partition["yield_after"] == 50


@pytest.mark.parametrize(
    "body",
    [
        {"policy": "bogus"},
        {"policy": "fixed_quantum", "quantum": 0},
        {"policy": "fixed_quantum", "quantum": True},
        {"budget": "lots"},
        {"budget": True},
    ],
)
def test_inject_fuel_rejects_bad_input(client, body):
    r = client.post("/partitions/0/fuel", json=body)
    assert r.status_code == 400
    assert r.json()["error"] == "CONFIG_ERROR"


def test_run_to_completion(client):
    r = client.post("/scheduler/run", json={})
    assert r.status_code == 200
    summary = r.json()["summary"]
    assert summary["stop_reason"] == "no_runnable_partitions"
    assert summary["completed"] == 2
    assert summary["yielded"] == 26
    assert summary["last_results"]["0"]["results"] == [55]


def test_run_bounded_cycles(client):
    r = client.post("/scheduler/run", json={"cycles": 3})
    summary = r.json()["summary"]
    assert summary["cycles"] == 3
    assert summary["stop_reason"] == "max_cycles"


def test_run_rejects_negative_cycles(client):
    r = client.post("/scheduler/run", json={"cycles": -1})
    assert r.status_code == 400


def test_events(client):
    client.post("/scheduler/step")
    r = client.get("/events", params={"partition_id": 0})
    assert r.status_code == 200
    types = [e["event_type"] for e in r.json()["events"]]
    assert types == ["partition_loaded", "fuel_injected", "slice_yielded"]

    r = client.get("/events", params={"limit": 1})
    assert [e["event_type"] for e in r.json()["events"]] == ["slice_yielded"]


def _use_manifest(monkeypatch, tmp_path, partitions):
    manifest = {"apiVersion": "fuelsched/v1", "kind": "PartitionManifest", "spec": {"partitions": partitions}}
    (tmp_path / "partitions.yaml").write_text(yaml.safe_dump(manifest), encoding="utf-8")
    (tmp_path / "runtime.yaml").write_text(yaml.safe_dump({"partitions_manifest": "partitions.yaml"}), encoding="utf-8")
    monkeypatch.setenv("FUELSCHED_RUNTIME_CONFIG", str(tmp_path / "runtime.yaml"))
    monkeypatch.setenv("FUELSCHED_LOGGING_CONFIG", str(tmp_path / "logging.yaml"))
    monkeypatch.setenv("FUELSCHED_LIMITS_CONFIG", str(CONFIG_DIR / "limits.yaml"))


def test_failed_partition_reported_on_health(monkeypatch, tmp_path):
    _use_manifest(
        monkeypatch,
        tmp_path,
        [
            {"partition_id": 0, "module": str(REPO_ROOT / "guests" / "fib.guest.yaml")},
            {"partition_id": 1, "module": "nowhere.guest.yaml"},
        ],
    )
    with TestClient(app) as c:
        health = c.get("/health").json()
        assert health["loaded"] == [0]
        assert list(health["failed"]) == ["1"]

        r = c.get("/partitions/1")
        assert r.status_code == 404
        assert r.json()["error"] == "NOT_LOADED"


def test_duplicate_manifest_ids_fail_startup(monkeypatch, tmp_path):
    fib = str(REPO_ROOT / "guests" / "fib.guest.yaml")
    _use_manifest(monkeypatch, tmp_path, [{"partition_id": 0, "module": fib}, {"partition_id": 0, "module": fib}])
    with pytest.raises(ConfigError):
        with TestClient(app):
            pass
