import asyncio
import json
import time

import httpx
import pytest

from bulkops.base.config import CaptureConfig, ExecutorConfig
from bulkops.capture.correlator import Correlator
from bulkops.capture.models import ActionTemplate, CapturedCredentials, Phase, TrafficEvent
from bulkops.data.store import KEY_CREDENTIALS, KEY_RECORDING, StateStore
from bulkops.errors import MissingCredentialsError, StaleCredentialsError
from bulkops.executor import BulkExecutor, Outcome, partition
from bulkops.executor.actions import InjectionRule, TemplateSpec, get_feature

CREDENTIALS = CapturedCredentials(headers={
    "authorization": "Bearer abc",
    "token-id": "tok-1",
    "version": "2021-07-28",
    "channel": "APP",
    "source": "WEB_USER",
})


class SleepRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)
        await asyncio.sleep(0)


def location_of(request):
    return request.url.params.get("locationId")


def make_executor(handler, config=None):
    sleep = SleepRecorder()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BulkExecutor(client, config or ExecutorConfig(), sleep=sleep), sleep, client


@pytest.fixture
def feature():
    return get_feature("call-recording-retention").customize(payload_input={"retention_days": 30})


@pytest.mark.asyncio
async def test_six_targets_with_one_timeout(feature):
    calls = []

    def handler(request):
        target = location_of(request)
        calls.append(target)
        if target == "F":
            raise httpx.ConnectTimeout("timed out", request=request)
        return httpx.Response(200, json={"success": True})

    executor, sleep, client = make_executor(handler)
    async with client:
        run = await executor.run(list("ABCDEF"), CREDENTIALS, feature)

    assert run.successful == list("ABCDE")
    assert run.failed == ["F"]
    assert run.skipped == []
    assert calls.count("F") == 3
    # one inter-batch delay, then the two retry backoffs for F
    assert sleep.calls == [1.0, 2.0, 4.0]
    assert run.summary()["failures"] == [{"target_id": "F", "message": "timed out"}]


@pytest.mark.asyncio
async def test_recovery_on_third_attempt_is_success(feature):
    attempts = {"n": 0}

    def handler(request):
        attempts["n"] += 1
        if attempts["n"] < 3:
            return httpx.Response(502, json={"message": "Bad gateway"})
        return httpx.Response(200, json={})

    executor, sleep, client = make_executor(handler)
    async with client:
        run = await executor.run(["L1"], CREDENTIALS, feature)

    assert run.successful == ["L1"]
    assert run.results[0].attempts == 3
    assert sleep.calls == [2.0, 4.0]


@pytest.mark.asyncio
async def test_missing_phone_account_is_skipped_not_failed(feature):
    def handler(request):
        if location_of(request) == "L2":
            return httpx.Response(404, json={"message": "Twilio account not found"})
        return httpx.Response(200, json={})

    executor, _, client = make_executor(handler)
    async with client:
        run = await executor.run(["L1", "L2"], CREDENTIALS, feature)

    assert run.successful == ["L1"]
    assert run.skipped == ["L2"]
    assert run.failed == []
    assert run.describe() == "Success: 1, Failed: 0, Skipped: 1"


@pytest.mark.asyncio
async def test_configured_skip_marker(feature):
    def handler(request):
        return httpx.Response(400, json={"message": ["LC Phone is not provisioned", "retry later"]})

    config = ExecutorConfig(backoff_base_ms=0, skip_markers=("not provisioned",))
    executor, _, client = make_executor(handler, config)
    async with client:
        run = await executor.run(["L1"], CREDENTIALS, feature)

    assert run.skipped == ["L1"]
    assert run.results[0].message == "LC Phone is not provisioned; retry later"


@pytest.mark.asyncio
async def test_buckets_partition_targets_in_order(feature):
    def handler(request):
        target = location_of(request)
        if target.startswith("bad"):
            return httpx.Response(500, text="oops")
        if target.startswith("skip"):
            return httpx.Response(404, json={"message": "No Twilio account for this location"})
        return httpx.Response(200)

    targets = ["ok1", "bad1", "skip1", "ok2", "ok1", "bad2", "skip2"]
    executor, _, client = make_executor(handler, ExecutorConfig(inter_batch_delay_ms=0, backoff_base_ms=0))
    async with client:
        run = await executor.run(targets, CREDENTIALS, feature)

    assert run.successful == ["ok1", "ok2"]
    assert run.failed == ["bad1", "bad2"]
    assert run.skipped == ["skip1", "skip2"]
    assert [r.target_id for r in run.results] == ["ok1", "bad1", "skip1", "ok2", "bad2", "skip2"]
    assert run.failures[0].message == "Operation failed (HTTP 500)"


@pytest.mark.asyncio
async def test_twelve_targets_make_three_batches_with_two_delays(feature):
    executor, sleep, client = make_executor(lambda request: httpx.Response(200))
    progress = []

    async with client:
        run = await executor.run(
            [f"L{i}" for i in range(12)], CREDENTIALS, feature,
            on_batch=lambda p: progress.append((p.index, p.total, len(p.results), p.is_last)),
        )

    assert len(run.successful) == 12
    assert progress == [(0, 3, 5, False), (1, 3, 5, False), (2, 3, 2, True)]
    assert sleep.calls == [1.0, 1.0]


@pytest.mark.asyncio
async def test_batch_size_caps_in_flight_calls(feature):
    state = {"in_flight": 0, "peak": 0}

    async def handler(request):
        state["in_flight"] += 1
        state["peak"] = max(state["peak"], state["in_flight"])
        await asyncio.sleep(0.01)
        state["in_flight"] -= 1
        return httpx.Response(200)

    executor, _, client = make_executor(handler)
    async with client:
        await executor.run([f"L{i}" for i in range(13)], CREDENTIALS, feature)

    assert state["peak"] == 5


@pytest.mark.asyncio
async def test_request_shape(feature):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    executor, _, client = make_executor(handler)
    async with client:
        await executor.run(["L1"], CREDENTIALS, feature)

    request = seen[0]
    assert request.method == "PUT"
    assert str(request.url) == "https://backend.leadconnectorhq.com/phone-system/twilio-accounts?locationId=L1"
    assert request.headers["authorization"] == "Bearer abc"
    assert request.headers["token-id"] == "tok-1"
    assert request.headers["channel"] == "APP"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {
        "enableCallRecordingDeletion": True,
        "callRecordingRetentionPeriod": 30,
    }


@pytest.mark.asyncio
async def test_template_replay_with_body_injection():
    template = ActionTemplate(
        url="https://backend.leadconnectorhq.com/settings",
        method="POST",
        headers={"Authorization": "Bearer recorded", "Host": "x", "X-Custom": "1"},
        body={"settings": {"locationId": "ORIG", "flag": True}},
    )
    spec = TemplateSpec(template=template, rule=InjectionRule.BODY, field="settings.locationId")
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        assert request.headers["x-custom"] == "1"
        assert request.headers["authorization"] == "Bearer abc"
        return httpx.Response(201)

    executor, _, client = make_executor(handler)
    async with client:
        run = await executor.run(["L1", "L2"], CREDENTIALS, spec)

    assert run.successful == ["L1", "L2"]
    assert sorted(b["settings"]["locationId"] for b in bodies) == ["L1", "L2"]
    assert template.body["settings"]["locationId"] == "ORIG"


@pytest.mark.asyncio
async def test_missing_credentials_rejected_before_any_call(feature):
    calls = []
    executor, _, client = make_executor(lambda request: calls.append(request) or httpx.Response(200))
    async with client:
        with pytest.raises(MissingCredentialsError):
            await executor.run(["L1"], CapturedCredentials(headers={"channel": "APP"}), feature)
    assert calls == []


@pytest.mark.asyncio
async def test_stale_credentials_rejected_when_limit_configured(feature):
    old = CapturedCredentials(headers={"authorization": "Bearer abc"}, captured_at=time.time() - 7200)
    executor, _, client = make_executor(
        lambda request: httpx.Response(200),
        ExecutorConfig(max_credential_age_s=3600),
    )
    async with client:
        with pytest.raises(StaleCredentialsError):
            await executor.run(["L1"], old, feature)


@pytest.mark.asyncio
async def test_recording_does_not_refresh_stale_credentials(feature):
    store = StateStore()
    store.set(KEY_CREDENTIALS, CapturedCredentials(
        headers={"authorization": "Bearer abc"}, captured_at=time.time() - 7200,
    ))
    store.set(KEY_RECORDING, True)
    Correlator(store, config=CaptureConfig()).process(TrafficEvent(
        correlation_id="rec-1",
        phase=Phase.INITIATED,
        url="https://backend.leadconnectorhq.com/phone-system/twilio-accounts?locationId=L1",
        method="PUT",
        headers={"Version": "2021-04-15"},
    ))
    assert store.action_template is not None

    executor, _, client = make_executor(
        lambda request: httpx.Response(200),
        ExecutorConfig(max_credential_age_s=3600),
    )
    async with client:
        with pytest.raises(StaleCredentialsError):
            await executor.run(["L1"], store.credentials, feature)


@pytest.mark.asyncio
async def test_old_credentials_only_warn_by_default(feature, caplog):
    old = CapturedCredentials(headers={"authorization": "Bearer abc"}, captured_at=time.time() - 7200)
    executor, _, client = make_executor(lambda request: httpx.Response(200))
    async with client:
        run = await executor.run(["L1"], old, feature)

    assert run.successful == ["L1"]
    assert "Captured credentials are" in caplog.text


@pytest.mark.asyncio
async def test_credentials_are_snapshotted_at_start(feature):
    headers = {"authorization": "Bearer first"}
    seen = []

    def handler(request):
        seen.append(request.headers["authorization"])
        return httpx.Response(200)

    def rotate(progress):
        headers["authorization"] = "Bearer second"

    executor, _, client = make_executor(handler)
    async with client:
        await executor.run(["L1", "L2", "L3", "L4", "L5", "L6"], headers, feature, on_batch=rotate)

    assert seen == ["Bearer first"] * 6


@pytest.mark.asyncio
async def test_cancel_skips_unstarted_batches(feature):
    calls = []
    cancel = asyncio.Event()

    def handler(request):
        calls.append(location_of(request))
        return httpx.Response(200)

    async def stop_after_first(progress):
        cancel.set()

    executor, sleep, client = make_executor(handler)
    async with client:
        run = await executor.run(
            [f"L{i}" for i in range(12)], CREDENTIALS, feature,
            on_batch=stop_after_first, cancel=cancel,
        )

    assert len(calls) == 5
    assert run.successful == [f"L{i}" for i in range(5)]
    assert run.skipped == [f"L{i}" for i in range(5, 12)]
    assert {r.message for r in run.results if r.outcome == Outcome.SKIPPED} == {"cancelled"}


@pytest.mark.asyncio
async def test_cancel_stops_retries(feature):
    cancel = asyncio.Event()
    calls = []

    def handler(request):
        calls.append(request)
        cancel.set()
        return httpx.Response(503, json={"message": "Service unavailable"})

    executor, sleep, client = make_executor(handler)
    async with client:
        run = await executor.run(["L1"], CREDENTIALS, feature, cancel=cancel)

    assert len(calls) == 1
    assert sleep.calls == []
    assert run.failed == ["L1"]
    assert run.results[0].attempts == 1


def test_partition():
    assert partition(["a", "b", "c"], 2) == [("a", "b"), ("c",)]
    assert partition([], 5) == []
    with pytest.raises(ValueError):
        partition(["a"], 0)
