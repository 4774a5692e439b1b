from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator

import httpx
import pytest
from fastapi.testclient import TestClient

from leadflow.core.config import Settings
from leadflow.main import app
from leadflow.runtime import Runtime, build_runtime, get_runtime
from leadflow.services.metrics import MetricsRegistry
from leadflow.services.store import InMemoryRepository


@pytest.fixture
def runtime() -> Iterator[Runtime]:
    settings = Settings(environment="test", metrics_alias_prefix="convexa")
    built = build_runtime(
        settings,
        InMemoryRepository(),
        metrics=MetricsRegistry(),
        adapters={},
        webhook_transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    app.dependency_overrides[get_runtime] = lambda: built
    yield built
    app.dependency_overrides.clear()


@pytest.fixture
def client(runtime: Runtime) -> TestClient:
    return TestClient(app)


def test_enqueue_and_fetch_job(client: TestClient) -> None:
    response = client.post(
        "/jobs",
        json={"kind": "scrape", "input_payload": {"source": "zillow", "zip": "08081"}},
    )
    assert response.status_code == 201
    job = response.json()
    assert job["status"] == "queued"
    assert job["attempt"] == 0

    fetched = client.get(f"/jobs/{job['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["input_payload"] == {"source": "zillow", "zip": "08081"}

    listed = client.get("/jobs", params={"status": "queued", "kind": "scrape"})
    assert [item["id"] for item in listed.json()] == [job["id"]]


def test_enqueue_rejects_invalid_payload(client: TestClient) -> None:
    response = client.post("/jobs", json={"kind": "scrape", "input_payload": {"source": "zillow", "zip": "abc"}})
    assert response.status_code == 422
    assert response.json()["detail"]["errors"]


def test_enqueue_rejects_matchmake_kind(client: TestClient) -> None:
    response = client.post("/jobs", json={"kind": "matchmake", "input_payload": {}})
    assert response.status_code == 422


def test_unknown_job_is_404(client: TestClient) -> None:
    assert client.get("/jobs/does-not-exist").status_code == 404


def test_bulk_enqueue_reports_created_and_skipped(client: TestClient) -> None:
    response = client.post(
        "/jobs/bulk",
        json={"sources": ["zillow", "mls"], "zips": ["08081", "08080"]},
    )
    assert response.status_code == 201
    body = response.json()
    assert body["created_count"] == 2
    assert body["skipped_count"] == 1
    assert body["skipped"][0] == {"source": "mls", "zip": None, "reason": "unsupported_source"}

    again = client.post("/jobs/bulk", json={"sources": ["zillow"], "zips": ["08081"]})
    assert again.json()["created_count"] == 0
    assert again.json()["skipped"][0]["reason"] == "duplicate_same_day"


def test_bulk_enqueue_without_targets_is_422(client: TestClient) -> None:
    response = client.post("/jobs/bulk", json={"sources": ["zillow"], "counties": ["nowhere"]})
    assert response.status_code == 422


def test_matchmaking_create_get_and_replay_conflict(client: TestClient, runtime: Runtime) -> None:
    created = client.post("/matchmaking-jobs", json={"min_score": 75})
    assert created.status_code == 201
    matchmaking_job_id = created.json()["matchmaking_job_id"]

    fetched = client.get(f"/matchmaking-jobs/{matchmaking_job_id}")
    assert fetched.status_code == 200
    assert fetched.json()["filter_json"] == {"min_score": 75.0, "source": "admin"}

    assert client.post(f"/matchmaking-jobs/{matchmaking_job_id}/replay").status_code == 409
    assert asyncio.run(runtime.pool.run_until_idle()) == 1

    replayed = client.post(f"/matchmaking-jobs/{matchmaking_job_id}/replay")
    assert replayed.status_code == 202
    assert replayed.json()["job_id"] != created.json()["job_id"]
    assert client.get("/matchmaking-jobs/missing").status_code == 404


def test_subscription_lifecycle(client: TestClient) -> None:
    created = client.post(
        "/webhooks/subscriptions",
        json={"target_url": "https://hooks.example.test/in", "event_types": ["job.completed", "job.completed"]},
    )
    assert created.status_code == 201
    subscription = created.json()
    assert len(subscription["signing_secret"]) == 64
    assert subscription["event_types"] == ["job.completed"]

    fetched = client.get(f"/webhooks/subscriptions/{subscription['id']}").json()
    listed = client.get("/webhooks/subscriptions").json()
    assert "signing_secret" not in fetched
    assert all("signing_secret" not in row for row in listed)

    patched = client.patch(f"/webhooks/subscriptions/{subscription['id']}", json={"is_active": False})
    assert patched.json()["is_active"] is False
    assert "signing_secret" not in patched.json()

    assert client.delete(f"/webhooks/subscriptions/{subscription['id']}").status_code == 204
    assert client.get(f"/webhooks/subscriptions/{subscription['id']}").status_code == 404


def test_subscription_rejects_non_http_target(client: TestClient) -> None:
    response = client.post(
        "/webhooks/subscriptions",
        json={"target_url": "ftp://hooks.example.test", "event_types": ["job.completed"]},
    )
    assert response.status_code == 422


def test_failure_listing_and_replay(client: TestClient, runtime: Runtime) -> None:
    subscription = client.post(
        "/webhooks/subscriptions",
        json={"target_url": "https://hooks.example.test/in", "event_types": ["test.event"]},
    ).json()

    async def no_sleep(seconds: float) -> None:
        return None

    runtime.dispatcher._sleep = no_sleep
    queued = client.post("/webhooks/test", json={"subscription_id": subscription["id"]})
    assert queued.status_code == 202
    asyncio.run(runtime.dispatcher.drain())

    deliveries = client.get("/webhooks/deliveries", params={"delivery_id": queued.json()["delivery_id"]}).json()
    assert [row["attempts_made"] for row in deliveries] == [3, 2, 1]

    failures = client.get("/webhooks/failures").json()
    assert len(failures) == 1
    replay = client.post(f"/webhooks/failures/{failures[0]['id']}/replay")
    assert replay.status_code == 202
    assert replay.json()["delivery_id"] == queued.json()["delivery_id"]

    assert client.post("/webhooks/failures/missing/replay").status_code == 404
    assert client.post("/webhooks/failures/replay-all").json() == {"replayed": 1}


def test_send_test_event_to_unknown_subscription_is_404(client: TestClient) -> None:
    assert client.post("/webhooks/test", json={"subscription_id": "missing"}).status_code == 404


def test_metrics_endpoint_renders_text(client: TestClient) -> None:
    client.post("/jobs", json={"kind": "scrape", "input_payload": {"source": "auction", "zip": "08081"}})
    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'leadflow_jobs_enqueued_total{kind="scrape"} 1' in response.text
    assert 'leadflow_jobs{kind="scrape",status="queued"} 1' in response.text
    assert 'convexa_build_info{commit="unknown",env="test"' in response.text


def test_verify_endpoint_sends_signed_challenge(client: TestClient, runtime: Runtime) -> None:
    seen: list[httpx.Request] = []

    def receiver(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    runtime.dispatcher._transport = httpx.MockTransport(receiver)
    response = client.post("/webhooks/verify", json={"url": "https://hooks.example.test/verify"})

    assert response.status_code == 200
    body = response.json()
    assert body["delivered"] is True
    assert body["status"] == 204
    assert body["error"] is None
    assert len(seen) == 1
    assert seen[0].headers["X-Webhook-Verification"] == "true"
    assert seen[0].headers["X-Signature"].startswith("sha256=")
    envelope = json.loads(seen[0].content)
    assert envelope["event"] == "webhook.challenge"
    assert envelope["data"]["challenge"] is True
    assert client.get("/webhooks/deliveries").json() == []


def test_verify_endpoint_reports_unreachable_target(client: TestClient, runtime: Runtime) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    runtime.dispatcher._transport = httpx.MockTransport(refuse)
    body = client.post("/webhooks/verify", json={"url": "https://down.example.test"}).json()

    assert body["delivered"] is False
    assert body["status"] == 0
    assert "ConnectError" in body["error"]
    assert client.post("/webhooks/verify", json={"url": "ftp://down.example.test"}).status_code == 422


def test_delivery_summary_counts_final_outcomes(client: TestClient, runtime: Runtime) -> None:
    subscription = client.post(
        "/webhooks/subscriptions",
        json={"target_url": "https://hooks.example.test/in", "event_types": ["test.event"]},
    ).json()

    async def no_sleep(seconds: float) -> None:
        return None

    runtime.dispatcher._sleep = no_sleep
    client.post("/webhooks/test", json={"subscription_id": subscription["id"]})
    asyncio.run(runtime.dispatcher.drain())

    summary = client.get("/webhooks/metrics").json()

    assert summary["delivered"] == 0
    assert summary["failed"] == 1
    assert summary["active_subscriptions"] == 1
    assert summary["p95_ms"] >= summary["p50_ms"] >= 0
