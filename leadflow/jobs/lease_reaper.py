from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from leadflow.services.metrics import REGISTRY, MetricsRegistry

logger = logging.getLogger(__name__)


def _as_aware(value: datetime | str) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def lease_expired(job: dict[str, Any], now: datetime | None = None) -> bool:
    expires_at = job.get("lease_expires_at")
    if not expires_at:
        return False
    return _as_aware(expires_at) <= (now or datetime.now(timezone.utc))


def should_requeue(job: dict[str, Any], now: datetime | None = None) -> bool:
    """A running job whose worker stopped renewing its lease goes back to the queue."""
    if job.get("status") != "running":
        return False
    return lease_expired(job, now=now)


async def reap_expired_leases(repository: Any, *, limit: int, metrics: MetricsRegistry = REGISTRY) -> int:
    count = await repository.requeue_expired_jobs(limit=limit)
    if count > 0:
        metrics.inc("jobs_lease_requeued_total", amount=count)
        logger.warning("lease expired for %s running job(s); requeued without attempt bump", count)
    return count
