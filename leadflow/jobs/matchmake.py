from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from leadflow.jobs.payloads import parse_payload
from leadflow.schemas.jobs import MatchmakePayload
from leadflow.services.events import EventHandler

if TYPE_CHECKING:
    from leadflow.jobs.executor import JobContext
    from leadflow.services.metrics import MetricsRegistry
    from leadflow.services.queue import JobQueue

logger = logging.getLogger(__name__)

AUTO_TRIGGER_TAGS = {"highIntent", "urgentSeller"}


async def execute_matchmake(job: dict[str, Any], context: "JobContext") -> dict[str, Any]:
    payload: MatchmakePayload = parse_payload(MatchmakePayload, job)
    criteria = payload.filter

    started = time.perf_counter()
    await context.repository.update_matchmaking_job(payload.matchmaking_job_id, status="running")
    matched_count = await context.repository.count_enriched_properties(
        min_score=criteria.min_score,
        property_id=criteria.property_id,
        listing_source=criteria.listing_source,
    )
    await context.repository.update_matchmaking_job(
        payload.matchmaking_job_id,
        status="completed",
        matched_count=matched_count,
        completed_at=datetime.now(timezone.utc),
    )
    duration_ms = int((time.perf_counter() - started) * 1000)
    context.metrics.observe("matchmaking_duration_ms", duration_ms, {"source": criteria.source})
    context.metrics.inc("matchmaking_completed_total", {"source": criteria.source})

    logger.info(
        "matchmaking finished job_id=%s matchmaking_job_id=%s matched=%s",
        job.get("id"),
        payload.matchmaking_job_id,
        matched_count,
    )
    return {
        "matchmaking_job_id": payload.matchmaking_job_id,
        "matched_count": matched_count,
        "meta": {
            "filter": criteria.model_dump(mode="json", exclude_none=True),
            "duration_ms": duration_ms,
        },
    }


async def mark_matchmaking_failed(repository: Any, job: dict[str, Any]) -> None:
    matchmaking_job_id = (job.get("input_payload") or {}).get("matchmaking_job_id")
    if not matchmaking_job_id:
        return
    await repository.update_matchmaking_job(
        matchmaking_job_id,
        status="failed",
        completed_at=datetime.now(timezone.utc),
    )


def should_auto_trigger(score: float | None, tags: list[str] | None, threshold: float) -> bool:
    if score is not None and score >= threshold:
        return True
    return bool(AUTO_TRIGGER_TAGS.intersection(tags or []))


def build_auto_trigger(
    queue: "JobQueue",
    repository: Any,
    *,
    threshold: float,
    metrics: "MetricsRegistry",
) -> EventHandler:
    async def on_enrichment_completed(event_type: str, payload: dict[str, Any]) -> None:
        property_id = payload.get("property_id")
        if not property_id or not should_auto_trigger(payload.get("score"), payload.get("tags"), threshold):
            return
        if await repository.has_auto_matchmaking_job(property_id):
            logger.info("matchmaking auto trigger skipped property_id=%s reason=exists", property_id)
            return

        matchmaking_job = await queue.enqueue_matchmaking({"property_id": property_id}, source="auto")
        metrics.inc("matchmaking_auto_triggered_total")
        logger.info(
            "matchmaking auto triggered property_id=%s matchmaking_job_id=%s score=%s tags=%s",
            property_id,
            matchmaking_job["id"],
            payload.get("score"),
            payload.get("tags"),
        )

    return on_enrichment_completed
