from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
from opentelemetry import trace

from leadflow.core.config import Settings
from leadflow.core.signing import encode_webhook_body, generate_signing_secret, sign_body
from leadflow.services.metrics import REGISTRY, MetricsRegistry
from leadflow.services.repository import RepositoryConflictError, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DeliveryError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class DeliveryTask:
    delivery_id: str
    subscription_id: str
    event_type: str
    payload: dict[str, Any]
    failure_id: str | None = None
    bulk_replay: bool = False


@dataclass
class DeliveryStats:
    delivered: int = 0
    failed: int = 0
    durations_ms: deque[int] = field(default_factory=lambda: deque(maxlen=1000))

    def record(self, delivered: bool, duration_ms: int) -> None:
        if delivered:
            self.delivered += 1
        else:
            self.failed += 1
        self.durations_ms.append(duration_ms)

    def percentile(self, p: float) -> int:
        if not self.durations_ms:
            return 0
        ordered = sorted(self.durations_ms)
        return ordered[math.floor(p / 100 * (len(ordered) - 1))]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookDispatcher:
    def __init__(
        self,
        repository: Any,
        *,
        concurrency: int = 4,
        max_attempts: int = 3,
        timeout_seconds: float = 5.0,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 8.0,
        replay_batch_limit: int = 500,
        metrics: MetricsRegistry = REGISTRY,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.timeout_seconds = timeout_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.replay_batch_limit = replay_batch_limit
        self.metrics = metrics
        self.queue: asyncio.Queue[DeliveryTask] = asyncio.Queue()
        self._transport = transport
        self._sleep = sleep
        self._now = now
        self._tasks: list[asyncio.Task[None]] = []
        self.stats = DeliveryStats()

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings, **kwargs: Any) -> "WebhookDispatcher":
        return cls(
            repository,
            concurrency=settings.webhook_concurrency,
            max_attempts=settings.webhook_max_attempts,
            timeout_seconds=settings.webhook_timeout_seconds,
            retry_base_seconds=settings.webhook_retry_base_seconds,
            retry_max_seconds=settings.webhook_retry_max_seconds,
            replay_batch_limit=settings.webhook_replay_batch_limit,
            **kwargs,
        )

    # pool lifecycle

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run_worker(index), name=f"webhook-delivery-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("webhook delivery pool started concurrency=%s", self.concurrency)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("webhook delivery pool stopped")

    async def drain(self) -> int:
        """Deliver everything currently queued on the calling task."""
        processed = 0
        while not self.queue.empty():
            task = self.queue.get_nowait()
            try:
                await self.deliver(task)
            finally:
                self.queue.task_done()
            processed += 1
        return processed

    async def _run_worker(self, index: int) -> None:
        while True:
            task = await self.queue.get()
            try:
                await self.deliver(task)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "webhook delivery crashed worker=%s delivery_id=%s subscription_id=%s",
                    index,
                    task.delivery_id,
                    task.subscription_id,
                )
            finally:
                self.queue.task_done()

    # producers

    async def emit(self, event_type: str, payload: dict[str, Any]) -> int:
        subscriptions = await self.repository.list_subscriptions(active_only=True, event_type=event_type)
        for subscription in subscriptions:
            self.queue.put_nowait(
                DeliveryTask(
                    delivery_id=str(uuid4()),
                    subscription_id=subscription["id"],
                    event_type=event_type,
                    payload=payload,
                )
            )
        self.metrics.inc("webhook_events_emitted_total", {"event_type": event_type})
        logger.info("webhook event emitted event_type=%s subscriptions=%s", event_type, len(subscriptions))
        return len(subscriptions)

    async def send_test_event(
        self,
        subscription_id: str,
        event_type: str = "test.event",
        payload: dict[str, Any] | None = None,
    ) -> str:
        await self.repository.get_subscription(subscription_id)
        delivery_id = str(uuid4())
        self.queue.put_nowait(
            DeliveryTask(
                delivery_id=delivery_id,
                subscription_id=subscription_id,
                event_type=event_type,
                payload=payload if payload is not None else {"ok": True},
            )
        )
        return delivery_id

    async def replay(self, failure_id: str) -> dict[str, Any]:
        failure = await self.repository.get_delivery_failure(failure_id)
        if failure["is_resolved"]:
            raise RepositoryConflictError("delivery failure already resolved")
        self.queue.put_nowait(self._replay_task(failure, bulk=False))
        logger.info("webhook replay queued failure_id=%s delivery_id=%s", failure_id, failure["delivery_id"])
        return failure

    async def replay_all(self, event_type: str | None = None, subscription_id: str | None = None) -> int:
        failures = await self.repository.list_delivery_failures(
            subscription_id=subscription_id,
            event_type=event_type,
            include_resolved=False,
            limit=self.replay_batch_limit,
        )
        for failure in failures:
            self.queue.put_nowait(self._replay_task(failure, bulk=True))
        logger.info(
            "webhook bulk replay queued count=%s event_type=%s subscription_id=%s",
            len(failures),
            event_type,
            subscription_id,
        )
        return len(failures)

    async def create_subscription(
        self,
        *,
        target_url: str,
        event_types: list[str],
        signing_secret: str | None = None,
        is_active: bool = True,
    ) -> dict[str, Any]:
        return await self.repository.create_subscription(
            target_url=target_url,
            event_types=event_types,
            signing_secret=signing_secret or generate_signing_secret(),
            is_active=is_active,
        )

    async def verify_endpoint(self, url: str, event_type: str = "webhook.challenge") -> dict[str, Any]:
        """Fire one signed challenge at ``url`` without a subscription, log row or retry."""
        sent_at = self._now()
        body = encode_webhook_body(event_type, {"challenge": True, "timestamp": int(sent_at.timestamp() * 1000)})
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": event_type,
            "X-Signature": sign_body(body, generate_signing_secret()),
            "X-Timestamp": str(int(sent_at.timestamp())),
            "X-Webhook-Verification": "true",
        }
        status_code = 0
        error: str | None = None
        started = time.perf_counter()
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(url, content=body, headers=headers)
                status_code = response.status_code
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                error = f"{type(exc).__name__}: {exc}"
        duration_ms = int((time.perf_counter() - started) * 1000)
        delivered = 200 <= status_code < 300
        logger.info(
            "webhook verification url=%s status=%s delivered=%s duration_ms=%s error=%s",
            url,
            status_code,
            delivered,
            duration_ms,
            error,
        )
        return {"delivered": delivered, "status": status_code, "duration_ms": duration_ms, "error": error}

    async def delivery_summary(self) -> dict[str, Any]:
        return {
            "delivered": self.stats.delivered,
            "failed": self.stats.failed,
            "p50_ms": self.stats.percentile(50),
            "p95_ms": self.stats.percentile(95),
            "active_subscriptions": await self.repository.count_active_subscriptions(),
        }

    # delivery

    async def deliver(self, task: DeliveryTask) -> bool:
        try:
            subscription = await self.repository.get_subscription(task.subscription_id)
        except RepositoryNotFoundError:
            logger.info(
                "webhook delivery skipped subscription_id=%s delivery_id=%s reason=deleted",
                task.subscription_id,
                task.delivery_id,
            )
            return False
        if not subscription["is_active"]:
            logger.info(
                "webhook delivery skipped subscription_id=%s delivery_id=%s reason=inactive",
                task.subscription_id,
                task.delivery_id,
            )
            return False

        body = encode_webhook_body(task.event_type, task.payload)
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": task.event_type,
            "X-Signature": sign_body(body, subscription["signing_secret"]),
            "X-Webhook-Id": task.delivery_id,
        }

        last_error: str | None = None
        with tracer.start_as_current_span("webhook.deliver") as span:
            span.set_attribute("webhook.delivery_id", task.delivery_id)
            span.set_attribute("webhook.event_type", task.event_type)
            span.set_attribute("webhook.subscription_id", task.subscription_id)

            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                for attempt in range(1, self.max_attempts + 1):
                    headers["X-Timestamp"] = str(int(self._now().timestamp()))
                    started = time.perf_counter()
                    status_code: int | None = None
                    try:
                        response = await client.post(subscription["target_url"], content=body, headers=headers)
                        status_code = response.status_code
                        if not 200 <= status_code < 300:
                            raise DeliveryError(f"http {status_code}", status_code=status_code)
                    except httpx.TransportError as exc:
                        last_error = f"{type(exc).__name__}: {exc}"
                    except DeliveryError as exc:
                        last_error = str(exc)
                    else:
                        last_error = None

                    duration_ms = int((time.perf_counter() - started) * 1000)
                    outcome = "delivered" if last_error is None else "failed"
                    await self.repository.add_delivery_log(
                        delivery_id=task.delivery_id,
                        subscription_id=task.subscription_id,
                        event_type=task.event_type,
                        status=outcome,
                        attempts_made=attempt,
                        duration_ms=duration_ms,
                        status_code=status_code,
                        error=last_error,
                    )
                    self.metrics.inc("webhook_deliveries_total", {"event_type": task.event_type, "status": outcome})
                    self.metrics.observe("webhook_delivery_ms", duration_ms, {"event_type": task.event_type})

                    if last_error is None:
                        span.set_attribute("webhook.attempts", attempt)
                        logger.info(
                            "webhook delivered delivery_id=%s subscription_id=%s event_type=%s attempt=%s duration_ms=%s",
                            task.delivery_id,
                            task.subscription_id,
                            task.event_type,
                            attempt,
                            duration_ms,
                        )
                        self.stats.record(True, duration_ms)
                        await self._on_success(task)
                        return True

                    logger.warning(
                        "webhook attempt failed delivery_id=%s subscription_id=%s attempt=%s error=%s",
                        task.delivery_id,
                        task.subscription_id,
                        attempt,
                        last_error,
                    )
                    if attempt < self.max_attempts:
                        await self._sleep(self._retry_delay(attempt))

            span.set_attribute("webhook.attempts", self.max_attempts)
            self.stats.record(False, duration_ms)

        await self._on_exhausted(task, last_error)
        return False

    async def _on_success(self, task: DeliveryTask) -> None:
        if task.failure_id is None:
            return
        await self.repository.resolve_delivery_failure(task.failure_id)
        self.metrics.inc("webhook_replays_total", {"status": "success"})
        if task.bulk_replay:
            self.metrics.inc("webhook_bulk_replay_success_total")
        logger.info("webhook failure resolved failure_id=%s delivery_id=%s", task.failure_id, task.delivery_id)

    async def _on_exhausted(self, task: DeliveryTask, last_error: str | None) -> None:
        if task.failure_id is not None:
            await self.repository.record_failed_replay(
                task.failure_id,
                attempts=self.max_attempts,
                last_error=last_error,
            )
            self.metrics.inc("webhook_replays_total", {"status": "failed"})
            logger.warning("webhook replay failed failure_id=%s error=%s", task.failure_id, last_error)
            return

        failure = await self.repository.create_delivery_failure(
            delivery_id=task.delivery_id,
            subscription_id=task.subscription_id,
            event_type=task.event_type,
            payload=task.payload,
            attempts=self.max_attempts,
            last_error=last_error,
        )
        self.metrics.inc("webhook_dead_letters_total", {"event_type": task.event_type})
        logger.error(
            "webhook dead lettered failure_id=%s delivery_id=%s subscription_id=%s error=%s",
            failure["id"],
            task.delivery_id,
            task.subscription_id,
            last_error,
        )

    def _retry_delay(self, attempt: int) -> float:
        delay = min(self.retry_base_seconds * (2 ** (attempt - 1)), self.retry_max_seconds)
        return delay * random.uniform(0.8, 1.2)

    @staticmethod
    def _replay_task(failure: dict[str, Any], *, bulk: bool) -> DeliveryTask:
        return DeliveryTask(
            delivery_id=failure["delivery_id"],
            subscription_id=failure["subscription_id"],
            event_type=failure["event_type"],
            payload=failure["payload"],
            failure_id=failure["id"],
            bulk_replay=bulk,
        )
