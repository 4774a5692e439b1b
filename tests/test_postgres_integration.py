from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from leadflow.services.repository import (
    PostgresRepository,
    RepositoryConflictError,
    RepositoryForbiddenError,
    RepositoryNotFoundError,
)

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("LEADFLOW_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require LEADFLOW_DATABASE_URL")
    asyncio.run(_apply_schema(url))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    asyncio.run(_truncate_tables(database_url))


def _with_repository(database_url: str, scenario: Callable[[PostgresRepository], Awaitable[T]]) -> T:
    async def runner() -> T:
        repository = PostgresRepository(
            database_url,
            min_pool_size=1,
            max_pool_size=4,
            job_max_attempts=3,
            job_retry_base_seconds=0.0,
            job_retry_max_seconds=60.0,
        )
        try:
            return await scenario(repository)
        finally:
            await repository.close()

    return asyncio.run(runner())


def test_claim_fail_retry_until_terminal(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> dict[str, Any]:
        job = await repository.create_job(kind="scrape", input_payload={"source": "zillow", "zip": "08081"})
        for attempt in range(3):
            claimed = await repository.claim_next_job(worker_id=f"w{attempt}", lease_seconds=60)
            assert claimed is not None and claimed["id"] == job["id"]
            await repository.fail_job(job_id=job["id"], worker_id=f"w{attempt}", error_message=f"boom {attempt}")
        assert await repository.claim_next_job(worker_id="w9", lease_seconds=60) is None
        return await repository.get_job(job["id"])

    job = _with_repository(database_url, scenario)

    assert job["status"] == "failed"
    assert job["attempt"] == 3
    assert [item["message"] for item in job["previous_errors"]] == ["boom 0", "boom 1", "boom 2"]


def test_complete_requires_claiming_worker(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> dict[str, Any]:
        job = await repository.create_job(kind="enrich", input_payload={"property_id": "p-1"})
        await repository.claim_next_job(worker_id="owner", lease_seconds=60)
        with pytest.raises(RepositoryForbiddenError):
            await repository.complete_job(job_id=job["id"], worker_id="intruder", result_payload={})
        completed = await repository.complete_job(job_id=job["id"], worker_id="owner", result_payload={"score": 91})
        with pytest.raises(RepositoryConflictError):
            await repository.complete_job(job_id=job["id"], worker_id="owner", result_payload={})
        return completed

    completed = _with_repository(database_url, scenario)

    assert completed["status"] == "completed"
    assert completed["result_payload"] == {"score": 91}
    assert completed["locked_by"] is None


def test_concurrent_claims_are_exclusive(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> list[Any]:
        for zip_code in ("08081", "08080", "08012"):
            await repository.create_job(kind="scrape", input_payload={"source": "zillow", "zip": zip_code})
        return await asyncio.gather(
            *(repository.claim_next_job(worker_id=f"w{index}", lease_seconds=60) for index in range(4))
        )

    claims = _with_repository(database_url, scenario)
    claimed_ids = [job["id"] for job in claims if job is not None]

    assert len(claimed_ids) == 3
    assert len(set(claimed_ids)) == 3


def test_expired_lease_is_requeued_without_attempt_bump(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> dict[str, Any]:
        job = await repository.create_job(kind="scrape", input_payload={"source": "auction", "zip": "08081"})
        await repository.claim_next_job(worker_id="crashed", lease_seconds=1)
        await asyncio.sleep(1.2)
        assert await repository.requeue_expired_jobs(limit=10) == 1
        return await repository.get_job(job["id"])

    job = _with_repository(database_url, scenario)

    assert job["status"] == "queued"
    assert job["attempt"] == 0
    assert job["locked_by"] is None


def test_scrape_dedupe_window_and_status_counts(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[bool, bool, list[dict[str, Any]]]:
        await repository.create_job(kind="scrape", input_payload={"source": "zillow", "zip": "08081"})
        day_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        same_day = await repository.has_scrape_job_since(source="zillow", zip_code="08081", since=day_start)
        other_zip = await repository.has_scrape_job_since(
            source="zillow",
            zip_code="08080",
            since=day_start - timedelta(days=1),
        )
        return same_day, other_zip, await repository.job_status_counts()

    same_day, other_zip, counts = _with_repository(database_url, scenario)

    assert same_day is True
    assert other_zip is False
    assert counts == [{"kind": "scrape", "status": "queued", "count": 1}]


def test_matchmaking_rows_link_to_queue_jobs(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[dict[str, Any], dict[str, Any]]:
        matchmaking_job_id = "6f1d8f9e-0c5b-4c55-9d0d-4bb7c1a0f001"
        created = await repository.create_matchmaking_job(
            matchmaking_job_id=matchmaking_job_id,
            filter_json={"property_id": "p-1", "source": "auto"},
            input_payload={"matchmaking_job_id": matchmaking_job_id, "filter": {"property_id": "p-1"}},
        )
        assert await repository.has_auto_matchmaking_job("p-1") is True
        with pytest.raises(RepositoryConflictError):
            await repository.requeue_matchmaking_job(matchmaking_job_id=matchmaking_job_id, input_payload={})
        await repository.update_matchmaking_job(matchmaking_job_id, status="completed", matched_count=4)
        replayed = await repository.requeue_matchmaking_job(
            matchmaking_job_id=matchmaking_job_id,
            input_payload={"matchmaking_job_id": matchmaking_job_id, "filter": {"property_id": "p-1"}},
        )
        return created, replayed

    created, replayed = _with_repository(database_url, scenario)

    assert created["status"] == "queued"
    assert created["job_id"] is not None
    assert replayed["status"] == "queued"
    assert replayed["matched_count"] is None
    assert replayed["job_id"] != created["job_id"]


def test_delivery_failure_replay_bookkeeping(database_url: str) -> None:
    async def scenario(repository: PostgresRepository) -> tuple[dict[str, Any], list[dict[str, Any]]]:
        subscription = await repository.create_subscription(
            target_url="https://hooks.example.test",
            event_types=["job.completed"],
            signing_secret="s" * 32,
        )
        for attempt in (1, 2):
            await repository.add_delivery_log(
                delivery_id="d-1",
                subscription_id=subscription["id"],
                event_type="job.completed",
                status="failed",
                attempts_made=attempt,
                duration_ms=12,
                status_code=500,
                error="http 500",
            )
        failure = await repository.create_delivery_failure(
            delivery_id="d-1",
            subscription_id=subscription["id"],
            event_type="job.completed",
            payload={"job_id": "j-1"},
            attempts=3,
            last_error="http 500",
        )
        await repository.record_failed_replay(failure["id"], attempts=3, last_error="http 502")
        await repository.delete_subscription(subscription["id"])
        logs = await repository.list_delivery_logs(delivery_id="d-1")
        resolved = await repository.resolve_delivery_failure(failure["id"])
        with pytest.raises(RepositoryNotFoundError):
            await repository.get_delivery_failure("00000000-0000-0000-0000-000000000000")
        return resolved, logs

    resolved, logs = _with_repository(database_url, scenario)

    assert resolved["attempts"] == 6
    assert resolved["last_error"] == "http 502"
    assert resolved["is_resolved"] is True
    assert [row["attempts_made"] for row in logs] == [2, 1]


async def _apply_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
    finally:
        await conn.close()


async def _truncate_tables(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              webhook_delivery_failures,
              webhook_delivery_logs,
              webhook_subscriptions,
              matchmaking_jobs,
              jobs
            restart identity cascade
            """
        )
    finally:
        await conn.close()
