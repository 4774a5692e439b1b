import asyncio
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

from leadflow.jobs.lease_reaper import should_requeue
from leadflow.services.repository import (
    DELIVERY_STATUSES,
    JOB_KINDS,
    JOB_SORT_COLUMNS,
    JOB_STATUSES,
    MATCHMAKING_STATUSES,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    compute_retry_delay_seconds,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local repository with the same coroutine interface as PostgresRepository.

    Used when no database URL is configured and throughout the test suite. All
    mutations run under one asyncio lock so claims stay single-owner.
    """

    def __init__(
        self,
        job_max_attempts: int = 3,
        job_retry_base_seconds: float = 2.0,
        job_retry_max_seconds: float = 60.0,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0.0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0.0, job_retry_max_seconds)
        self._now = now
        self._lock = asyncio.Lock()
        self.jobs: dict[str, dict[str, Any]] = {}
        self.matchmaking_jobs: dict[str, dict[str, Any]] = {}
        self.subscriptions: dict[str, dict[str, Any]] = {}
        self.delivery_logs: list[dict[str, Any]] = []
        self.delivery_failures: dict[str, dict[str, Any]] = {}

    async def close(self) -> None:
        return None

    # jobs

    async def create_job(self, *, kind: str, input_payload: dict[str, Any]) -> dict[str, Any]:
        if kind not in JOB_KINDS:
            raise RepositoryValidationError(f"unknown job kind: {kind}")
        async with self._lock:
            job = self._new_job(kind=kind, input_payload=input_payload)
            return deepcopy(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return deepcopy(job)

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
        if status and status not in JOB_STATUSES:
            raise RepositoryValidationError("status must be one of: queued, running, completed, failed")
        if kind and kind not in JOB_KINDS:
            raise RepositoryValidationError("kind must be one of: scrape, enrich, matchmake")
        column = sort_by if sort_by in JOB_SORT_COLUMNS else "created_at"
        items = [
            job
            for job in self.jobs.values()
            if (status is None or job["status"] == status) and (kind is None or job["kind"] == kind)
        ]
        items.sort(key=lambda job: (job[column], job["seq"]), reverse=order.lower() != "asc")
        return [deepcopy(job) for job in items[offset : offset + limit]]

    async def has_scrape_job_since(self, *, source: str, zip_code: str, since: datetime) -> bool:
        return any(
            job["kind"] == "scrape"
            and job["input_payload"].get("source") == source
            and job["input_payload"].get("zip") == zip_code
            and job["created_at"] >= since
            for job in self.jobs.values()
        )

    async def claim_next_job(self, *, worker_id: str, lease_seconds: int) -> dict[str, Any] | None:
        async with self._lock:
            now = self._now()
            due = [job for job in self.jobs.values() if job["status"] == "queued" and job["next_run_at"] <= now]
            if not due:
                return None
            job = min(due, key=lambda item: (item["next_run_at"], item["created_at"], item["seq"]))
            job["status"] = "running"
            job["locked_by"] = worker_id
            job["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            job["updated_at"] = now
            return deepcopy(job)

    async def complete_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        result_payload: dict[str, Any],
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._lock_running_job(job_id=job_id, worker_id=worker_id)
            job["status"] = "completed"
            job["result_payload"] = deepcopy(result_payload)
            job["locked_by"] = None
            job["lease_expires_at"] = None
            job["updated_at"] = self._now()
            return deepcopy(job)

    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool = True,
    ) -> dict[str, Any]:
        async with self._lock:
            job = self._lock_running_job(job_id=job_id, worker_id=worker_id)
            now = self._now()
            job["attempt"] += 1
            job["previous_errors"].append({"message": error_message, "timestamp": now.isoformat()})
            job["locked_by"] = None
            job["lease_expires_at"] = None
            job["updated_at"] = now
            if retryable and job["attempt"] < self.job_max_attempts:
                delay = compute_retry_delay_seconds(
                    attempt=job["attempt"],
                    base_seconds=self.job_retry_base_seconds,
                    max_seconds=self.job_retry_max_seconds,
                )
                job["status"] = "queued"
                job["next_run_at"] = now + timedelta(seconds=delay)
            else:
                job["status"] = "failed"
            return deepcopy(job)

    async def requeue_expired_jobs(self, *, limit: int) -> int:
        bounded_limit = max(1, min(limit, 1000))
        async with self._lock:
            now = self._now()
            expired = sorted(
                (job for job in self.jobs.values() if should_requeue(job, now=now)),
                key=lambda job: job["lease_expires_at"],
            )[:bounded_limit]
            for job in expired:
                job["status"] = "queued"
                job["locked_by"] = None
                job["lease_expires_at"] = None
                job["next_run_at"] = now
                job["updated_at"] = now
            return len(expired)

    async def job_status_counts(self) -> list[dict[str, Any]]:
        counts: dict[tuple[str, str], int] = {}
        for job in self.jobs.values():
            key = (job["kind"], job["status"])
            counts[key] = counts.get(key, 0) + 1
        return [{"kind": kind, "status": status, "count": count} for (kind, status), count in sorted(counts.items())]

    async def count_enriched_properties(
        self,
        *,
        min_score: float | None = None,
        property_id: str | None = None,
        listing_source: str | None = None,
    ) -> int:
        matched: set[str] = set()
        for job in self.jobs.values():
            if job["kind"] != "enrich" or job["status"] != "completed":
                continue
            payload = job["input_payload"]
            result = job["result_payload"] or {}
            if min_score is not None and float(result.get("score") or 0) < min_score:
                continue
            if property_id is not None and payload.get("property_id") != property_id:
                continue
            if listing_source is not None and payload.get("listing_source") != listing_source:
                continue
            matched.add(str(payload.get("property_id")))
        return len(matched)

    # matchmaking

    async def create_matchmaking_job(
        self,
        *,
        matchmaking_job_id: str,
        filter_json: dict[str, Any],
        input_payload: dict[str, Any],
    ) -> dict[str, Any]:
        async with self._lock:
            now = self._now()
            self.matchmaking_jobs[matchmaking_job_id] = {
                "id": matchmaking_job_id,
                "filter_json": deepcopy(filter_json),
                "status": "queued",
                "matched_count": None,
                "job_id": None,
                "created_at": now,
                "completed_at": None,
            }
            return self._attach_matchmaking_queue_job(matchmaking_job_id, input_payload)

    async def requeue_matchmaking_job(
        self,
        *,
        matchmaking_job_id: str,
        input_payload: dict[str, Any],
    ) -> dict[str, Any]:
        async with self._lock:
            current = self.matchmaking_jobs.get(matchmaking_job_id)
            if current is None:
                raise RepositoryNotFoundError("matchmaking job not found")
            if current["status"] in {"queued", "running"}:
                raise RepositoryConflictError("matchmaking job is still in progress")
            return self._attach_matchmaking_queue_job(matchmaking_job_id, input_payload)

    async def get_matchmaking_job(self, matchmaking_job_id: str) -> dict[str, Any]:
        item = self.matchmaking_jobs.get(matchmaking_job_id)
        if item is None:
            raise RepositoryNotFoundError("matchmaking job not found")
        return deepcopy(item)

    async def update_matchmaking_job(
        self,
        matchmaking_job_id: str,
        *,
        status: str,
        matched_count: int | None = None,
        completed_at: datetime | None = None,
    ) -> dict[str, Any]:
        if status not in MATCHMAKING_STATUSES:
            raise RepositoryValidationError(f"invalid matchmaking status: {status}")
        async with self._lock:
            item = self.matchmaking_jobs.get(matchmaking_job_id)
            if item is None:
                raise RepositoryNotFoundError("matchmaking job not found")
            item["status"] = status
            if matched_count is not None:
                item["matched_count"] = matched_count
            item["completed_at"] = completed_at
            return deepcopy(item)

    async def list_matchmaking_jobs(
        self,
        *,
        status: str | None = None,
        source: str | None = None,
        property_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        items = [
            item
            for item in self.matchmaking_jobs.values()
            if (status is None or item["status"] == status)
            and (source is None or item["filter_json"].get("source") == source)
            and (property_id is None or item["filter_json"].get("property_id") == property_id)
        ]
        items.sort(key=lambda item: item["created_at"], reverse=True)
        return [deepcopy(item) for item in items[offset : offset + limit]]

    async def has_auto_matchmaking_job(self, property_id: str) -> bool:
        return any(
            item["filter_json"].get("source") == "auto" and item["filter_json"].get("property_id") == property_id
            for item in self.matchmaking_jobs.values()
        )

    def _attach_matchmaking_queue_job(self, matchmaking_job_id: str, input_payload: dict[str, Any]) -> dict[str, Any]:
        job = self._new_job(kind="matchmake", input_payload=input_payload)
        item = self.matchmaking_jobs[matchmaking_job_id]
        item["status"] = "queued"
        item["job_id"] = job["id"]
        item["matched_count"] = None
        item["completed_at"] = None
        return deepcopy(item)

    # webhook subscriptions

    async def create_subscription(
        self,
        *,
        target_url: str,
        event_types: list[str],
        signing_secret: str,
        is_active: bool = True,
    ) -> dict[str, Any]:
        async with self._lock:
            now = self._now()
            subscription_id = str(uuid4())
            self.subscriptions[subscription_id] = {
                "id": subscription_id,
                "target_url": target_url,
                "event_types": list(event_types),
                "signing_secret": signing_secret,
                "is_active": is_active,
                "created_at": now,
                "updated_at": now,
            }
            return deepcopy(self.subscriptions[subscription_id])

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        target_url: str | None = None,
        event_types: list[str] | None = None,
        is_active: bool | None = None,
    ) -> dict[str, Any]:
        async with self._lock:
            item = self.subscriptions.get(subscription_id)
            if item is None:
                raise RepositoryNotFoundError("subscription not found")
            if target_url is not None:
                item["target_url"] = target_url
            if event_types is not None:
                item["event_types"] = list(event_types)
            if is_active is not None:
                item["is_active"] = is_active
            item["updated_at"] = self._now()
            return deepcopy(item)

    async def delete_subscription(self, subscription_id: str) -> None:
        async with self._lock:
            if self.subscriptions.pop(subscription_id, None) is None:
                raise RepositoryNotFoundError("subscription not found")

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        item = self.subscriptions.get(subscription_id)
        if item is None:
            raise RepositoryNotFoundError("subscription not found")
        return deepcopy(item)

    async def list_subscriptions(
        self,
        *,
        active_only: bool = False,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        items = [
            item
            for item in self.subscriptions.values()
            if (not active_only or item["is_active"]) and (event_type is None or event_type in item["event_types"])
        ]
        items.sort(key=lambda item: item["created_at"], reverse=True)
        return [deepcopy(item) for item in items]

    async def count_active_subscriptions(self) -> int:
        return sum(1 for item in self.subscriptions.values() if item["is_active"])

    # webhook delivery log and dead letters

    async def add_delivery_log(
        self,
        *,
        delivery_id: str,
        subscription_id: str,
        event_type: str,
        status: str,
        attempts_made: int,
        duration_ms: int,
        status_code: int | None = None,
        error: str | None = None,
    ) -> dict[str, Any]:
        if status not in DELIVERY_STATUSES:
            raise RepositoryValidationError(f"invalid delivery status: {status}")
        async with self._lock:
            row = {
                "id": str(uuid4()),
                "delivery_id": delivery_id,
                "subscription_id": subscription_id,
                "event_type": event_type,
                "status": status,
                "attempts_made": attempts_made,
                "duration_ms": duration_ms,
                "status_code": status_code,
                "error": error,
                "created_at": self._now(),
            }
            self.delivery_logs.append(row)
            return deepcopy(row)

    async def list_delivery_logs(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        status: str | None = None,
        delivery_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        items = [
            row
            for row in reversed(self.delivery_logs)
            if (subscription_id is None or row["subscription_id"] == subscription_id)
            and (event_type is None or row["event_type"] == event_type)
            and (status is None or row["status"] == status)
            and (delivery_id is None or row["delivery_id"] == delivery_id)
        ]
        return [deepcopy(row) for row in items[offset : offset + limit]]

    async def create_delivery_failure(
        self,
        *,
        delivery_id: str,
        subscription_id: str,
        event_type: str,
        payload: dict[str, Any],
        attempts: int,
        last_error: str | None,
    ) -> dict[str, Any]:
        async with self._lock:
            now = self._now()
            failure_id = str(uuid4())
            self.delivery_failures[failure_id] = {
                "id": failure_id,
                "delivery_id": delivery_id,
                "subscription_id": subscription_id,
                "event_type": event_type,
                "payload": deepcopy(payload),
                "attempts": attempts,
                "last_error": last_error,
                "is_resolved": False,
                "replayed_at": None,
                "created_at": now,
                "updated_at": now,
            }
            return deepcopy(self.delivery_failures[failure_id])

    async def get_delivery_failure(self, failure_id: str) -> dict[str, Any]:
        item = self.delivery_failures.get(failure_id)
        if item is None:
            raise RepositoryNotFoundError("delivery failure not found")
        return deepcopy(item)

    async def list_delivery_failures(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        include_resolved: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        items = [
            item
            for item in self.delivery_failures.values()
            if (subscription_id is None or item["subscription_id"] == subscription_id)
            and (event_type is None or item["event_type"] == event_type)
            and (include_resolved or not item["is_resolved"])
        ]
        items.sort(key=lambda item: item["created_at"], reverse=True)
        return [deepcopy(item) for item in items[offset : offset + limit]]

    async def resolve_delivery_failure(self, failure_id: str) -> dict[str, Any]:
        async with self._lock:
            item = self.delivery_failures.get(failure_id)
            if item is None:
                raise RepositoryNotFoundError("delivery failure not found")
            now = self._now()
            item["is_resolved"] = True
            item["replayed_at"] = now
            item["updated_at"] = now
            return deepcopy(item)

    async def record_failed_replay(self, failure_id: str, *, attempts: int, last_error: str | None) -> dict[str, Any]:
        async with self._lock:
            item = self.delivery_failures.get(failure_id)
            if item is None:
                raise RepositoryNotFoundError("delivery failure not found")
            item["attempts"] += attempts
            item["last_error"] = last_error
            item["updated_at"] = self._now()
            return deepcopy(item)

    async def count_unresolved_failures(self) -> int:
        return sum(1 for item in self.delivery_failures.values() if not item["is_resolved"])

    # helpers

    def _new_job(self, *, kind: str, input_payload: dict[str, Any]) -> dict[str, Any]:
        now = self._now()
        job_id = str(uuid4())
        job = {
            "id": job_id,
            "kind": kind,
            "input_payload": deepcopy(input_payload),
            "status": "queued",
            "attempt": 0,
            "previous_errors": [],
            "result_payload": None,
            "locked_by": None,
            "lease_expires_at": None,
            "next_run_at": now,
            "created_at": now,
            "updated_at": now,
            "seq": len(self.jobs),
        }
        self.jobs[job_id] = job
        return job

    def _lock_running_job(self, *, job_id: str, worker_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job["status"] != "running":
            raise RepositoryConflictError("job is not in running state")
        if job["locked_by"] != worker_id:
            raise RepositoryForbiddenError("job claimed by another worker")
        return job
