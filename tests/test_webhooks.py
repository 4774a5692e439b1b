from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from leadflow.core.signing import verify_signature
from leadflow.services.events import EventBus
from leadflow.services.metrics import MetricsRegistry
from leadflow.services.repository import RepositoryConflictError, RepositoryNotFoundError
from leadflow.services.store import InMemoryRepository
from leadflow.services.webhooks import DeliveryStats, WebhookDispatcher

SECRET = "whsec-test"


class Receiver:
    def __init__(self, statuses: list[int] | None = None, default: int = 200) -> None:
        self.statuses = list(statuses or [])
        self.default = default
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.default
        return httpx.Response(status)


def _dispatcher(receiver: Receiver) -> tuple[WebhookDispatcher, InMemoryRepository, list[float]]:
    repository = InMemoryRepository()
    sleeps: list[float] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    dispatcher = WebhookDispatcher(
        repository,
        max_attempts=3,
        retry_base_seconds=0.5,
        retry_max_seconds=8.0,
        metrics=MetricsRegistry(),
        transport=httpx.MockTransport(receiver),
        sleep=record_sleep,
    )
    return dispatcher, repository, sleeps


async def _subscribe(dispatcher: WebhookDispatcher, *event_types: str, is_active: bool = True) -> dict[str, Any]:
    return await dispatcher.create_subscription(
        target_url="https://hooks.example.test/leadflow",
        event_types=list(event_types),
        signing_secret=SECRET,
        is_active=is_active,
    )


def test_delivery_is_signed_over_exact_body() -> None:
    receiver = Receiver()
    dispatcher, repository, _ = _dispatcher(receiver)

    async def scenario() -> dict[str, Any]:
        subscription = await _subscribe(dispatcher, "job.completed")
        assert await dispatcher.emit("job.completed", {"job_id": "j-1", "scraped_count": 4}) == 1
        await dispatcher.drain()
        return subscription

    subscription = asyncio.run(scenario())

    request = receiver.requests[0]
    body = request.content
    assert json.loads(body) == {"event": "job.completed", "data": {"job_id": "j-1", "scraped_count": 4}}
    assert verify_signature(body, SECRET, request.headers["X-Signature"])
    assert not verify_signature(body + b" ", SECRET, request.headers["X-Signature"])
    assert request.headers["X-Event-Type"] == "job.completed"
    assert request.headers["X-Timestamp"].isdigit()
    logs = repository.delivery_logs
    assert len(logs) == 1
    assert logs[0]["status"] == "delivered"
    assert logs[0]["delivery_id"] == request.headers["X-Webhook-Id"]
    assert logs[0]["subscription_id"] == subscription["id"]


def test_emit_only_targets_matching_active_subscriptions() -> None:
    receiver = Receiver()
    dispatcher, _, _ = _dispatcher(receiver)

    async def scenario() -> int:
        await _subscribe(dispatcher, "job.completed")
        await _subscribe(dispatcher, "enrichment.completed")
        await _subscribe(dispatcher, "job.completed", is_active=False)
        return await dispatcher.emit("job.completed", {"job_id": "j-1"})

    assert asyncio.run(scenario()) == 1


def test_exhausted_delivery_is_dead_lettered_after_three_attempts() -> None:
    receiver = Receiver(default=500)
    dispatcher, repository, sleeps = _dispatcher(receiver)

    async def scenario() -> tuple[bool, list[dict[str, Any]]]:
        await _subscribe(dispatcher, "job.completed")
        await dispatcher.emit("job.completed", {"job_id": "j-1"})
        task = dispatcher.queue.get_nowait()
        delivered = await dispatcher.deliver(task)
        return delivered, await repository.list_delivery_failures()

    delivered, failures = asyncio.run(scenario())

    assert delivered is False
    assert len(receiver.requests) == 3
    assert [row["attempts_made"] for row in repository.delivery_logs] == [1, 2, 3]
    assert {row["status"] for row in repository.delivery_logs} == {"failed"}
    assert repository.delivery_logs[0]["status_code"] == 500
    assert len(sleeps) == 2
    assert 0.4 <= sleeps[0] <= 0.6
    assert 0.8 <= sleeps[1] <= 1.2
    assert len(failures) == 1
    assert failures[0]["attempts"] == 3
    assert failures[0]["last_error"] == "http 500"
    assert failures[0]["payload"] == {"job_id": "j-1"}
    assert dispatcher.metrics.counter_value("webhook_dead_letters_total", {"event_type": "job.completed"}) == 1
    assert (dispatcher.stats.delivered, dispatcher.stats.failed) == (0, 1)


def test_transport_errors_are_retried() -> None:
    calls = {"count": 0}

    def flaky(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(204)

    dispatcher, repository, _ = _dispatcher(Receiver())
    dispatcher._transport = httpx.MockTransport(flaky)

    async def scenario() -> None:
        await _subscribe(dispatcher, "job.completed")
        await dispatcher.emit("job.completed", {"job_id": "j-1"})
        await dispatcher.drain()

    asyncio.run(scenario())

    assert [row["status"] for row in repository.delivery_logs] == ["failed", "delivered"]
    assert "ConnectError" in repository.delivery_logs[0]["error"]
    assert repository.delivery_failures == {}


def test_replay_resolves_failure_and_rejects_second_replay() -> None:
    receiver = Receiver(statuses=[500, 500, 500], default=200)
    dispatcher, repository, _ = _dispatcher(receiver)

    async def scenario() -> dict[str, Any]:
        await _subscribe(dispatcher, "job.completed")
        await dispatcher.emit("job.completed", {"job_id": "j-1"})
        await dispatcher.drain()
        failure = (await repository.list_delivery_failures())[0]

        await dispatcher.replay(failure["id"])
        await dispatcher.drain()
        with pytest.raises(RepositoryConflictError):
            await dispatcher.replay(failure["id"])
        return await repository.get_delivery_failure(failure["id"])

    failure = asyncio.run(scenario())

    assert failure["is_resolved"] is True
    assert failure["replayed_at"] is not None
    replay_request = receiver.requests[-1]
    assert replay_request.headers["X-Webhook-Id"] == failure["delivery_id"]
    assert dispatcher.metrics.counter_value("webhook_replays_total", {"status": "success"}) == 1
    assert dispatcher.metrics.counter_value("webhook_bulk_replay_success_total") == 0


def test_replay_of_unknown_failure_is_not_found() -> None:
    dispatcher, _, _ = _dispatcher(Receiver())
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(dispatcher.replay("missing"))


def test_failed_replay_accumulates_attempts() -> None:
    receiver = Receiver(default=503)
    dispatcher, repository, _ = _dispatcher(receiver)

    async def scenario() -> dict[str, Any]:
        await _subscribe(dispatcher, "job.completed")
        await dispatcher.emit("job.completed", {"job_id": "j-1"})
        await dispatcher.drain()
        failure = (await repository.list_delivery_failures())[0]
        await dispatcher.replay(failure["id"])
        await dispatcher.drain()
        return await repository.get_delivery_failure(failure["id"])

    failure = asyncio.run(scenario())

    assert failure["is_resolved"] is False
    assert failure["attempts"] == 6
    assert len(repository.delivery_failures) == 1
    assert dispatcher.metrics.counter_value("webhook_replays_total", {"status": "failed"}) == 1


def test_bulk_replay_counts_successes() -> None:
    receiver = Receiver(statuses=[500] * 6, default=200)
    dispatcher, repository, _ = _dispatcher(receiver)

    async def scenario() -> tuple[int, int]:
        await _subscribe(dispatcher, "job.completed")
        await dispatcher.emit("job.completed", {"job_id": "j-1"})
        await dispatcher.emit("job.completed", {"job_id": "j-2"})
        await dispatcher.drain()
        queued = await dispatcher.replay_all(event_type="job.completed")
        await dispatcher.drain()
        return queued, await repository.count_unresolved_failures()

    queued, unresolved = asyncio.run(scenario())

    assert queued == 2
    assert unresolved == 0
    assert dispatcher.metrics.counter_value("webhook_bulk_replay_success_total") == 2
    assert dispatcher.metrics.counter_value("webhook_replays_total", {"status": "success"}) == 2


def test_inactive_or_deleted_subscription_is_skipped() -> None:
    receiver = Receiver()
    dispatcher, repository, _ = _dispatcher(receiver)

    async def scenario() -> None:
        paused = await _subscribe(dispatcher, "job.completed")
        removed = await _subscribe(dispatcher, "job.completed")
        await dispatcher.emit("job.completed", {"job_id": "j-1"})
        await repository.update_subscription(paused["id"], is_active=False)
        await repository.delete_subscription(removed["id"])
        await dispatcher.drain()

    asyncio.run(scenario())

    assert receiver.requests == []
    assert repository.delivery_logs == []
    assert repository.delivery_failures == {}


def test_send_test_event_requires_existing_subscription() -> None:
    receiver = Receiver()
    dispatcher, _, _ = _dispatcher(receiver)

    async def scenario() -> str:
        subscription = await _subscribe(dispatcher, "job.completed")
        delivery_id = await dispatcher.send_test_event(subscription["id"])
        await dispatcher.drain()
        return delivery_id

    delivery_id = asyncio.run(scenario())

    assert receiver.requests[0].headers["X-Webhook-Id"] == delivery_id
    assert json.loads(receiver.requests[0].content) == {"event": "test.event", "data": {"ok": True}}
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(dispatcher.send_test_event("missing"))


def test_event_bus_fans_out_to_dispatcher_and_handlers() -> None:
    receiver = Receiver()
    dispatcher, _, _ = _dispatcher(receiver)
    bus = EventBus(dispatcher)
    seen: list[str] = []

    async def failing_handler(event_type: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    async def recording_handler(event_type: str, payload: dict[str, Any]) -> None:
        seen.append(payload["job_id"])

    bus.subscribe("job.completed", failing_handler)
    bus.subscribe("job.completed", recording_handler)

    async def scenario() -> int:
        await _subscribe(dispatcher, "job.completed")
        queued = await bus.publish("job.completed", {"job_id": "j-7"})
        await dispatcher.drain()
        return queued

    assert asyncio.run(scenario()) == 1
    assert seen == ["j-7"]
    assert len(receiver.requests) == 1


def test_event_bus_runs_handlers_when_fan_out_fails() -> None:
    class UnreachableDispatcher:
        async def emit(self, event_type: str, payload: dict[str, Any]) -> int:
            raise ConnectionError("database unavailable")

    bus = EventBus(UnreachableDispatcher())
    scores: list[int] = []

    async def auto_trigger(event_type: str, payload: dict[str, Any]) -> None:
        scores.append(payload["score"])

    bus.subscribe("enrichment.completed", auto_trigger)

    queued = asyncio.run(bus.publish("enrichment.completed", {"property_id": "p-1", "score": 95}))

    assert queued == 0
    assert scores == [95]


def test_delivery_stats_percentiles_use_nearest_lower_rank() -> None:
    stats = DeliveryStats()
    assert stats.percentile(95) == 0

    for value in (40, 10, 30, 20):
        stats.record(True, value)
    stats.record(False, 500)

    assert stats.delivered == 4
    assert stats.failed == 1
    assert stats.percentile(50) == 30
    assert stats.percentile(95) == 40
