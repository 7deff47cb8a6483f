"""Tests for FastAPI endpoints using TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from trafficshift.api.main import create_app


@pytest.fixture()
def client(controller):
    """FastAPI TestClient around a controller with short timers."""
    app = create_app(controller)
    with TestClient(app) as tc:
        yield tc


def _register(client, ref: str) -> str:
    resp = client.post("/versions", json={"artifact_ref": ref, "tags": {"build": ref[-5:]}})
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


@pytest.fixture()
def live(client) -> tuple[str, str]:
    v1 = _register(client, "s3://builds/app-1.0.0.zip")
    v2 = _register(client, "s3://builds/app-1.1.0.zip")
    resp = client.post("/aliases/live/commit", json={"version_id": v1})
    assert resp.status_code == 200, resp.text
    return v1, v2


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["active_shifts"] == 0


def test_request_id_echoed(client):
    resp = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert resp.headers["X-Request-ID"] == "abc-123"


def test_metrics_endpoint(client, live):
    client.get("/aliases/live/route")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "route_total" in resp.text
    assert "alias_weight" in resp.text


# -------------------------------------------------------------------
# Versions
# -------------------------------------------------------------------

def test_register_and_list_versions(client):
    vid = _register(client, "s3://builds/app-2.0.0.zip")
    listed = client.get("/versions").json()
    assert [v["id"] for v in listed] == [vid]

    got = client.get(f"/versions/{vid}").json()
    assert got["artifact_ref"] == "s3://builds/app-2.0.0.zip"
    assert got["tags"] == {"build": "0.zip"}


def test_duplicate_artifact_conflicts(client):
    _register(client, "s3://builds/app-2.0.0.zip")
    resp = client.post("/versions", json={"artifact_ref": "s3://builds/app-2.0.0.zip"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "DuplicateArtifactError"


def test_unknown_version_404(client):
    resp = client.get("/versions/nope")
    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFoundError"


def test_prune_version(client, live):
    v1, v2 = live
    assert client.delete(f"/versions/{v1}").status_code == 409
    assert client.delete(f"/versions/{v2}").status_code == 204
    assert client.get(f"/versions/{v2}").status_code == 404


# -------------------------------------------------------------------
# Aliases
# -------------------------------------------------------------------

def test_alias_state_and_route(client, live):
    v1, v2 = live
    state = client.get("/aliases/live").json()
    assert state == {"name": "live", "weights": {v1: 1.0}, "active_plan": None}

    resp = client.get("/aliases/live/route", params={"fingerprint": "user-7"})
    assert resp.json() == {"alias": "live", "version_id": v1}

    assert [a["name"] for a in client.get("/aliases").json()] == ["live"]


def test_set_weights(client, live):
    v1, v2 = live
    resp = client.put("/aliases/live/weights", json={"weights": {v1: 0.8, v2: 0.2}})
    assert resp.status_code == 200
    assert resp.json()["weights"] == {v1: 0.8, v2: 0.2}

    referenced = {v["id"] for v in client.get("/aliases/live/versions").json()}
    assert referenced == {v1, v2}


def test_invalid_weights_422(client, live):
    v1, v2 = live
    resp = client.put("/aliases/live/weights", json={"weights": {v1: 0.8, v2: 0.1}})
    assert resp.status_code == 422
    assert resp.json()["error"] == "InvalidWeightsError"
    assert client.get("/aliases/live").json()["weights"] == {v1: 1.0}


def test_unknown_alias_404(client):
    assert client.get("/aliases/nope").status_code == 404
    assert client.get("/aliases/nope/route").status_code == 404


# -------------------------------------------------------------------
# Shifts
# -------------------------------------------------------------------

def test_shift_lifecycle(client, controller, live):
    v1, v2 = live
    resp = client.post(
        "/shifts",
        json={
            "alias": "live",
            "from_version": v1,
            "to_version": v2,
            "steps": [{"fraction": 0.1, "hold_seconds": 0.05}, {"fraction": 1.0}],
            "alarms": [{"name": "errors", "metric": "error_rate", "threshold": 0.05}],
        },
    )
    assert resp.status_code == 202, resp.text
    plan_id = resp.json()["id"]

    controller.wait_for_shift(plan_id, timeout=10)
    shift = client.get(f"/shifts/{plan_id}").json()
    assert shift["status"] == "succeeded"
    assert shift["alarms"][0]["comparison_op"] == "gt"
    assert client.get("/aliases/live").json()["weights"] == {v2: 1.0}

    history = client.get("/shifts", params={"alias": "live"}).json()
    assert [s["id"] for s in history] == [plan_id]


def test_shift_with_preset(client, controller, live):
    v1, v2 = live
    resp = client.post(
        "/shifts",
        json={"alias": "live", "from_version": v1, "to_version": v2, "preset": "AllAtOnce"},
    )
    assert resp.status_code == 202
    assert resp.json()["steps"] == [{"fraction": 1.0, "hold_seconds": 0.0}]
    controller.wait_for_shift(resp.json()["id"], timeout=10)


def test_shift_abort_and_conflict(client, controller, live):
    v1, v2 = live
    body = {
        "alias": "live",
        "from_version": v1,
        "to_version": v2,
        "steps": [{"fraction": 0.5, "hold_seconds": 30}, {"fraction": 1.0}],
    }
    plan_id = client.post("/shifts", json=body).json()["id"]

    assert client.post("/shifts", json=body).status_code == 409
    assert client.put("/aliases/live/weights", json={"weights": {v1: 1.0}}).status_code == 409
    assert client.get("/aliases/live").json()["active_plan"]["id"] == plan_id
    health = client.get("/health").json()
    assert health["active_shifts"] == 1
    assert health["active_aliases"] == ["live"]

    assert client.post(f"/shifts/{plan_id}/abort").status_code == 200
    controller.wait_for_shift(plan_id, timeout=5)

    shift = client.get(f"/shifts/{plan_id}").json()
    assert shift["status"] == "rolled_back"
    assert client.get("/health").json()["active_shifts"] == 0
    assert client.get("/aliases/live").json()["weights"] == {v1: 1.0}


@pytest.mark.parametrize(
    "overrides",
    [
        {"steps": [], "preset": None},
        {"preset": "Canary10Percent5Minutes"},
        {"steps": None, "preset": None},
        {"steps": [{"fraction": 0.6}, {"fraction": 0.3}]},
        {"preset": None, "steps": [{"fraction": 1.0}], "to_version": "ghost"},
    ],
)
def test_invalid_shift_requests_422(client, live, overrides):
    v1, v2 = live
    body = {
        "alias": "live",
        "from_version": v1,
        "to_version": v2,
        "steps": [{"fraction": 1.0}],
    }
    body.update(overrides)
    resp = client.post("/shifts", json=body)
    assert resp.status_code == 422, resp.text


def test_unknown_shift_404(client):
    assert client.get("/shifts/nope").status_code == 404
    assert client.post("/shifts/nope/abort").status_code == 404
