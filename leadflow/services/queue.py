from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from pydantic import ValidationError

from leadflow.schemas.jobs import PAYLOAD_MODELS, MatchmakePayload, MatchmakingFilter
from leadflow.services.counties import resolve_counties_to_zips
from leadflow.services.metrics import REGISTRY, MetricsRegistry

logger = logging.getLogger(__name__)

SUPPORTED_SCRAPE_SOURCES = ("zillow", "auction")


class JobValidationError(Exception):
    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


@dataclass
class BulkEnqueueResult:
    created: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    resolved_zips: list[str] | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_payload(kind: str, input_payload: dict[str, Any]) -> dict[str, Any]:
    model = PAYLOAD_MODELS.get(kind)
    if model is None:
        raise JobValidationError(f"unknown job kind: {kind}")
    try:
        parsed = model.model_validate(input_payload)
    except ValidationError as exc:
        raise JobValidationError(f"invalid {kind} payload", errors=_summarize(exc)) from exc
    return parsed.model_dump(mode="json", exclude_none=True)


def _summarize(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
        for error in exc.errors()
    ]


class JobQueue:
    def __init__(
        self,
        repository: Any,
        metrics: MetricsRegistry = REGISTRY,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repository = repository
        self.metrics = metrics
        self._now = now

    async def enqueue(self, kind: str, input_payload: dict[str, Any]) -> dict[str, Any]:
        if kind == "matchmake":
            filter_input = input_payload.get("filter", input_payload)
            if not isinstance(filter_input, dict):
                raise JobValidationError("invalid matchmake payload")
            matchmaking_job = await self.enqueue_matchmaking(
                {key: value for key, value in filter_input.items() if key != "source"},
                source=str(filter_input.get("source") or "admin"),
            )
            return await self.repository.get_job(matchmaking_job["job_id"])

        payload = validate_payload(kind, input_payload)
        job = await self.repository.create_job(kind=kind, input_payload=payload)
        self.metrics.inc("jobs_enqueued_total", {"kind": kind})
        logger.info("job enqueued job_id=%s kind=%s", job["id"], kind)
        return job

    async def enqueue_matchmaking(self, filter_json: dict[str, Any], source: str = "admin") -> dict[str, Any]:
        try:
            criteria = MatchmakingFilter.model_validate({**filter_json, "source": source})
        except ValidationError as exc:
            raise JobValidationError("invalid matchmaking filter", errors=_summarize(exc)) from exc

        matchmaking_job_id = str(uuid4())
        filter_payload = criteria.model_dump(mode="json", exclude_none=True)
        input_payload = MatchmakePayload(matchmaking_job_id=matchmaking_job_id, filter=criteria).model_dump(
            mode="json", exclude_none=True
        )
        matchmaking_job = await self.repository.create_matchmaking_job(
            matchmaking_job_id=matchmaking_job_id,
            filter_json=filter_payload,
            input_payload=input_payload,
        )
        self.metrics.inc("jobs_enqueued_total", {"kind": "matchmake"})
        logger.info(
            "matchmaking enqueued matchmaking_job_id=%s job_id=%s source=%s",
            matchmaking_job_id,
            matchmaking_job["job_id"],
            source,
        )
        return matchmaking_job

    async def replay_matchmaking(self, matchmaking_job_id: str) -> dict[str, Any]:
        current = await self.repository.get_matchmaking_job(matchmaking_job_id)
        criteria = MatchmakingFilter.model_validate(current["filter_json"])
        input_payload = MatchmakePayload(matchmaking_job_id=matchmaking_job_id, filter=criteria).model_dump(
            mode="json", exclude_none=True
        )
        replayed = await self.repository.requeue_matchmaking_job(
            matchmaking_job_id=matchmaking_job_id,
            input_payload=input_payload,
        )
        logger.info("matchmaking replayed matchmaking_job_id=%s job_id=%s", matchmaking_job_id, replayed["job_id"])
        return replayed

    async def enqueue_bulk(
        self,
        sources: list[str],
        zips: list[str] | None = None,
        counties: list[str] | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
        filters: dict[str, Any] | None = None,
    ) -> BulkEnqueueResult:
        if not sources:
            raise JobValidationError("sources must contain at least one source")

        result = BulkEnqueueResult()
        targets = [item.strip() for item in zips or [] if item and item.strip()]
        if not targets and counties:
            result.resolved_zips = resolve_counties_to_zips(counties)
            targets = list(result.resolved_zips)
        if not targets:
            raise JobValidationError("zips or counties must resolve to at least one zip")

        now = self._now()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        for source in sources:
            if source not in SUPPORTED_SCRAPE_SOURCES:
                result.skipped.append({"source": source, "reason": "unsupported_source"})
                continue
            for zip_code in targets:
                candidate: dict[str, Any] = {"source": source, "zip": zip_code}
                if from_date is not None:
                    candidate["from_date"] = from_date.isoformat()
                if to_date is not None:
                    candidate["to_date"] = to_date.isoformat()
                if filters:
                    candidate["filters"] = filters
                try:
                    payload = validate_payload("scrape", candidate)
                except JobValidationError:
                    result.skipped.append({"source": source, "zip": zip_code, "reason": "validation"})
                    continue

                # Best effort: a concurrent bulk call can slip a duplicate between check and insert.
                if await self.repository.has_scrape_job_since(source=source, zip_code=zip_code, since=day_start):
                    result.skipped.append({"source": source, "zip": zip_code, "reason": "duplicate_same_day"})
                    continue

                job = await self.repository.create_job(kind="scrape", input_payload=payload)
                result.created.append({"id": job["id"], "source": source, "zip": zip_code})
                self.metrics.inc("jobs_enqueued_total", {"kind": "scrape"})

        logger.info(
            "bulk enqueue finished created=%s skipped=%s sources=%s zips=%s",
            len(result.created),
            len(result.skipped),
            len(sources),
            len(targets),
        )
        return result

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self.repository.get_job(job_id)

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
        sort_by: str = "created_at",
        order: str = "desc",
    ) -> list[dict[str, Any]]:
        return await self.repository.list_jobs(
            status=status,
            kind=kind,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            order=order,
        )
