from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from leadflow.jobs.adapters import SourceAdapter
from leadflow.jobs.enrich import HeuristicScorer, Scorer, execute_enrich
from leadflow.jobs.matchmake import execute_matchmake
from leadflow.jobs.payloads import NonRetryableJobError
from leadflow.jobs.scrape import execute_scrape
from leadflow.services.metrics import REGISTRY, MetricsRegistry
from leadflow.services.vendor import CapExceeded, PermanentVendorError


@dataclass
class JobContext:
    repository: Any
    gateway: Any
    adapters: dict[str, SourceAdapter] = field(default_factory=dict)
    scorer: Scorer = field(default_factory=HeuristicScorer)
    metrics: MetricsRegistry = REGISTRY


def is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, (NonRetryableJobError, CapExceeded, PermanentVendorError))


async def execute_job(job: dict[str, Any], context: JobContext) -> dict[str, Any]:
    kind = job.get("kind")
    if kind == "scrape":
        return await execute_scrape(job, context)
    if kind == "enrich":
        return await execute_enrich(job, context)
    if kind == "matchmake":
        return await execute_matchmake(job, context)
    raise NonRetryableJobError(f"unsupported job kind: {kind}")
