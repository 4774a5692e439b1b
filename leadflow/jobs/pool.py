from __future__ import annotations

import asyncio
import logging
import os
import random
import socket
import time
from typing import Any

from opentelemetry import trace

from leadflow.core.config import Settings
from leadflow.jobs.executor import JobContext, execute_job, is_retryable
from leadflow.jobs.lease_reaper import reap_expired_leases
from leadflow.jobs.matchmake import mark_matchmaking_failed
from leadflow.services.events import COMPLETION_EVENTS, EventBus
from leadflow.services.metrics import REGISTRY, MetricsRegistry
from leadflow.services.repository import RepositoryConflictError, RepositoryForbiddenError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def default_worker_prefix() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def completion_event_payload(job: dict[str, Any], result: dict[str, Any]) -> dict[str, Any]:
    kind = job["kind"]
    if kind == "scrape":
        meta = result.get("meta") or {}
        return {
            "job_id": job["id"],
            "source": meta.get("source"),
            "zip": meta.get("zip"),
            "scraped_count": meta.get("scraped_count"),
            "total_items": meta.get("total_items"),
        }
    if kind == "enrich":
        return {
            "job_id": job["id"],
            "property_id": result.get("property_id"),
            "score": result.get("score"),
            "tags": result.get("tags") or [],
            "provider": (result.get("meta") or {}).get("provider"),
        }
    return {
        "job_id": job["id"],
        "matchmaking_job_id": result.get("matchmaking_job_id"),
        "matched_count": result.get("matched_count"),
    }


class WorkerPool:
    def __init__(
        self,
        repository: Any,
        context: JobContext,
        bus: EventBus,
        *,
        concurrency: int = 4,
        poll_interval_seconds: float = 2.0,
        max_backoff_seconds: float = 15.0,
        lease_seconds: int = 300,
        reaper_interval_seconds: float = 30.0,
        reaper_batch_size: int = 100,
        metrics: MetricsRegistry = REGISTRY,
        worker_prefix: str | None = None,
    ) -> None:
        self.repository = repository
        self.context = context
        self.bus = bus
        self.concurrency = max(1, concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.lease_seconds = lease_seconds
        self.reaper_interval_seconds = reaper_interval_seconds
        self.reaper_batch_size = reaper_batch_size
        self.metrics = metrics
        self.worker_prefix = worker_prefix or default_worker_prefix()
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    def from_settings(
        cls,
        repository: Any,
        context: JobContext,
        bus: EventBus,
        settings: Settings,
        **kwargs: Any,
    ) -> "WorkerPool":
        return cls(
            repository,
            context,
            bus,
            concurrency=settings.worker_concurrency,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            lease_seconds=settings.claim_lease_seconds,
            reaper_interval_seconds=settings.lease_reaper_interval_seconds,
            reaper_batch_size=settings.lease_reaper_batch_size,
            **kwargs,
        )

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run_worker(f"{self.worker_prefix}-{index}"), name=f"job-worker-{index}")
            for index in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self._run_reaper(), name="lease-reaper"))
        logger.info("worker pool started concurrency=%s prefix=%s", self.concurrency, self.worker_prefix)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("worker pool stopped")

    async def run_once(self, worker_id: str) -> bool:
        job = await self.repository.claim_next_job(worker_id=worker_id, lease_seconds=self.lease_seconds)
        if job is None:
            return False
        await self.process_job(job, worker_id)
        return True

    async def run_until_idle(self, worker_id: str = "inline-worker", max_jobs: int = 1000) -> int:
        """Process due jobs on the calling task until none are left."""
        processed = 0
        while processed < max_jobs and await self.run_once(worker_id):
            processed += 1
        return processed

    async def process_job(self, job: dict[str, Any], worker_id: str) -> dict[str, Any] | None:
        kind = job["kind"]
        with tracer.start_as_current_span("worker.process_job") as span:
            span.set_attribute("job.id", job["id"])
            span.set_attribute("job.kind", kind)
            span.set_attribute("job.attempt", job["attempt"])
            started = time.perf_counter()

            try:
                result = await execute_job(job, self.context)
            except Exception as exc:
                return await self._record_failure(job, worker_id, exc)

            try:
                completed = await self.repository.complete_job(
                    job_id=job["id"],
                    worker_id=worker_id,
                    result_payload=result,
                )
            except (RepositoryConflictError, RepositoryForbiddenError) as exc:
                logger.warning("job result rejected job_id=%s worker_id=%s reason=%s", job["id"], worker_id, exc)
                return None

            duration_ms = int((time.perf_counter() - started) * 1000)
            self.metrics.inc("jobs_completed_total", {"kind": kind})
            self.metrics.observe("job_duration_ms", duration_ms, {"kind": kind})
            logger.info(
                "job completed job_id=%s kind=%s worker_id=%s duration_ms=%s",
                job["id"],
                kind,
                worker_id,
                duration_ms,
            )

        event_type = COMPLETION_EVENTS[kind]
        try:
            await self.bus.publish(event_type, completion_event_payload(completed, result))
        except Exception:
            logger.exception("event publish failed job_id=%s event_type=%s", job["id"], event_type)
        return completed

    async def _record_failure(self, job: dict[str, Any], worker_id: str, exc: Exception) -> dict[str, Any] | None:
        retryable = is_retryable(exc)
        message = f"{type(exc).__name__}: {exc}"
        try:
            failed = await self.repository.fail_job(
                job_id=job["id"],
                worker_id=worker_id,
                error_message=message,
                retryable=retryable,
            )
        except (RepositoryConflictError, RepositoryForbiddenError) as reject:
            logger.warning("job failure rejected job_id=%s worker_id=%s reason=%s", job["id"], worker_id, reject)
            return None

        terminal = failed["status"] == "failed"
        self.metrics.inc("jobs_failed_total", {"kind": job["kind"], "terminal": str(terminal).lower()})
        if terminal:
            logger.error(
                "job failed job_id=%s kind=%s attempt=%s retryable=%s error=%s",
                job["id"],
                job["kind"],
                failed["attempt"],
                retryable,
                message,
            )
            if job["kind"] == "matchmake":
                await mark_matchmaking_failed(self.repository, job)
        else:
            logger.warning(
                "job requeued job_id=%s kind=%s attempt=%s next_run_at=%s error=%s",
                job["id"],
                job["kind"],
                failed["attempt"],
                failed["next_run_at"],
                message,
            )
        return failed

    async def _run_worker(self, worker_id: str) -> None:
        backoff = self.poll_interval_seconds
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    processed = await self.run_once(worker_id)
                if not processed:
                    await asyncio.sleep(self.poll_interval_seconds)
                backoff = self.poll_interval_seconds
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), self.max_backoff_seconds)
                logger.exception("worker iteration failed worker_id=%s: %s; retry in %.1fs", worker_id, exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for

    async def _run_reaper(self) -> None:
        while True:
            try:
                await reap_expired_leases(self.repository, limit=self.reaper_batch_size, metrics=self.metrics)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("lease reaper iteration failed")
            await asyncio.sleep(self.reaper_interval_seconds)
