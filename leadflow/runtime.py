from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx

from leadflow.core.config import Settings, get_settings
from leadflow.jobs.adapters import SourceAdapter, build_source_adapters
from leadflow.jobs.enrich import HeuristicScorer
from leadflow.jobs.executor import JobContext
from leadflow.jobs.matchmake import build_auto_trigger
from leadflow.jobs.pool import WorkerPool
from leadflow.services.events import ENRICHMENT_COMPLETED, EventBus
from leadflow.services.metrics import REGISTRY, MetricsRegistry
from leadflow.services.queue import JobQueue
from leadflow.services.repository import get_repository
from leadflow.services.vendor import VendorGateway
from leadflow.services.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    repository: Any
    metrics: MetricsRegistry
    gateway: VendorGateway
    queue: JobQueue
    dispatcher: WebhookDispatcher
    bus: EventBus
    pool: WorkerPool
    started: bool = False

    async def start(self) -> None:
        if self.started:
            return
        self.dispatcher.start()
        self.pool.start()
        self.started = True

    async def stop(self) -> None:
        if not self.started:
            return
        await self.pool.stop()
        await self.dispatcher.stop()
        self.started = False


def build_runtime(
    settings: Settings,
    repository: Any,
    *,
    metrics: MetricsRegistry = REGISTRY,
    adapters: dict[str, SourceAdapter] | None = None,
    vendor_transport: httpx.AsyncBaseTransport | None = None,
    webhook_transport: httpx.AsyncBaseTransport | None = None,
    **pool_kwargs: Any,
) -> Runtime:
    metrics.prefix = settings.metrics_prefix
    gateway = VendorGateway.from_settings(settings, metrics=metrics, transport=vendor_transport)
    queue = JobQueue(repository, metrics=metrics)
    dispatcher = WebhookDispatcher.from_settings(repository, settings, metrics=metrics, transport=webhook_transport)
    bus = EventBus(dispatcher)
    bus.subscribe(
        ENRICHMENT_COMPLETED,
        build_auto_trigger(
            queue,
            repository,
            threshold=settings.matchmaking_auto_trigger_score,
            metrics=metrics,
        ),
    )
    context = JobContext(
        repository=repository,
        gateway=gateway,
        adapters=adapters
        if adapters is not None
        else build_source_adapters(settings.scrape_source_urls, timeout_seconds=settings.scrape_timeout_seconds),
        scorer=HeuristicScorer(),
        metrics=metrics,
    )
    pool = WorkerPool.from_settings(repository, context, bus, settings, metrics=metrics, **pool_kwargs)
    return Runtime(
        settings=settings,
        repository=repository,
        metrics=metrics,
        gateway=gateway,
        queue=queue,
        dispatcher=dispatcher,
        bus=bus,
        pool=pool,
    )


@lru_cache
def get_runtime() -> Runtime:
    settings = get_settings()
    if not settings.database_url:
        logger.warning("LEADFLOW_DATABASE_URL not set; using in-memory repository")
    return build_runtime(settings, get_repository())
