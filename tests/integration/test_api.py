"""
HTTP control surface end to end: captured state in, bucketed results out.
Remote calls go to an httpx MockTransport.
"""
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from bulkops.base.session import CaptureSession
from bulkops.capture.models import CapturedCredentials, Phase, TargetSet, TrafficEvent
from bulkops.data.store import KEY_CREDENTIALS, KEY_TARGETS, StateStore
from bulkops.server.api import create_app


class RemoteAPI:
    """Stands in for the mutation endpoint."""

    def __init__(self):
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        location = request.url.params.get("locationId")
        if location == "NOPHONE":
            return httpx.Response(404, json={"message": "Twilio account not found"})
        if location == "BROKEN":
            return httpx.Response(500, json={"message": "Internal error"})
        return httpx.Response(200, json={"success": True})


@pytest.fixture
def remote():
    return RemoteAPI()


@pytest.fixture
def session(fast_config):
    return CaptureSession(fast_config, store=StateStore())


@pytest.fixture
def client(session, remote):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(remote))
    with TestClient(create_app(session=session, http_client=http_client)) as test_client:
        yield test_client


def capture(session, ids=("L1", "L2", "NOPHONE", "BROKEN")):
    session.store.set(KEY_CREDENTIALS, CapturedCredentials(headers={
        "authorization": "Bearer abc",
        "channel": "APP",
        "source": "WEB_USER",
    }))
    session.store.set(KEY_TARGETS, TargetSet.from_iterable(ids))


def test_state_reflects_capture(client, session):
    assert client.get("/v1/state").json()["target_count"] == 0

    capture(session)
    state = client.get("/v1/state").json()

    assert state["targets"] == ["L1", "L2", "NOPHONE", "BROKEN"]
    assert state["has_credentials"] is True
    assert state["recording"] is False
    assert state["proxy_active"] is False


def test_feature_run_returns_buckets(client, session, remote):
    capture(session)

    response = client.post("/v1/bulk", json={
        "feature": "call-recording-retention",
        "payload_input": {"retention_days": 30},
    })

    assert response.status_code == 200
    body = response.json()
    assert body["successful"] == ["L1", "L2"]
    assert body["skipped"] == ["NOPHONE"]
    assert body["failed"] == ["BROKEN"]
    assert body["failures"] == [{"target_id": "BROKEN", "message": "Internal error"}]
    # Every non-2xx is retried before it is classified
    assert len(remote.requests) == 1 + 1 + 3 + 3
    assert json.loads(remote.requests[0].content)["callRecordingRetentionPeriod"] == 30


def test_explicit_ids_override_captured_targets(client, session, remote):
    capture(session)

    body = client.post("/v1/bulk", json={
        "feature": "call-recording-retention",
        "target_ids": [" X1 ", "X2", ""],
    }).json()

    assert body["successful"] == ["X1", "X2"]


def test_run_without_credentials_is_rejected(client, session, remote):
    session.store.set(KEY_TARGETS, TargetSet.from_iterable(["L1"]))

    response = client.post("/v1/bulk", json={"feature": "call-recording-retention"})

    assert response.status_code == 409
    assert response.json()["code"] == "RUN_001"
    assert remote.requests == []


def test_run_without_targets_is_rejected(client, session):
    capture(session, ids=())
    response = client.post("/v1/bulk", json={"feature": "call-recording-retention"})
    assert response.status_code == 409
    assert response.json()["code"] == "RUN_003"


def test_unknown_feature(client, session):
    capture(session)
    response = client.post("/v1/bulk", json={"feature": "nope"})
    assert response.status_code == 404
    assert response.json()["code"] == "SPEC_001"


def test_request_validation(client):
    both = client.post("/v1/bulk", json={"feature": "call-recording-retention", "use_template": True})
    assert both.status_code == 422

    no_rule = client.post("/v1/bulk", json={"use_template": True})
    assert no_rule.status_code == 422

    too_big = client.post("/v1/bulk", json={"feature": "call-recording-retention", "batch_size": 500})
    assert too_big.status_code == 422


def test_template_run_requires_recording(client, session):
    capture(session)
    response = client.post("/v1/bulk", json={
        "use_template": True,
        "injection": "query",
        "injection_field": "locationId",
    })
    assert response.status_code == 409
    assert response.json()["code"] == "SPEC_003"


def test_record_then_replay(client, session, remote):
    capture(session, ids=("L1", "L2"))
    assert client.post("/v1/recording", json={"active": True}).json() == {"recording": True}

    # The user performs the action once in the app
    session.correlator.process(TrafficEvent(
        correlation_id="rec-1",
        phase=Phase.INITIATED,
        url="https://backend.leadconnectorhq.com/phone-system/twilio-accounts?locationId=ORIG",
        method="PUT",
        headers={"Authorization": "Bearer abc", "Version": "2021-04-15"},
        body=json.dumps({"enableCallRecordingDeletion": True, "callRecordingRetentionPeriod": 14}),
    ))

    state = client.get("/v1/state").json()
    assert state["recording"] is False
    assert state["action_template"]["method"] == "PUT"
    assert state["action_template"]["headers"]["Authorization"] == "***"

    body = client.post("/v1/bulk", json={
        "use_template": True,
        "injection": "query",
        "injection_field": "locationId",
    }).json()

    assert body["successful"] == ["L1", "L2"]
    sent = sorted(r.url.params["locationId"] for r in remote.requests)
    assert sent == ["L1", "L2"]
    assert all(r.headers["version"] == "2021-04-15" for r in remote.requests)


def test_reset_clears_state(client, session):
    capture(session)

    state = client.delete("/v1/state").json()

    assert state["targets"] == []
    assert state["has_credentials"] is False


def test_features_and_logs(client, session):
    features = client.get("/v1/features").json()
    assert features[0]["name"] == "call-recording-retention"

    client.post("/v1/recording", json={"active": False})
    logs = client.get("/v1/logs", params={"limit": 1}).json()
    assert len(logs) == 1
    assert logs[0].endswith("Recording disarmed")


def test_logs_limit_must_be_positive(client, session):
    session.log("one")
    session.log("two")

    assert client.get("/v1/logs", params={"limit": 0}).status_code == 422
    assert client.get("/v1/logs", params={"limit": 2}).json()[-1].endswith("two")
