from __future__ import annotations

import json
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from leadflow.core.config import get_settings


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


JOB_KINDS = {"scrape", "enrich", "matchmake"}
JOB_STATUSES = {"queued", "running", "completed", "failed"}
MATCHMAKING_STATUSES = {"queued", "running", "completed", "failed"}
DELIVERY_STATUSES = {"delivered", "failed"}
JOB_SORT_COLUMNS = {"created_at", "updated_at"}

JOB_COLUMNS = """
  id::text as id,
  kind,
  input_payload,
  status,
  attempt,
  previous_errors,
  result_payload,
  locked_by,
  lease_expires_at,
  next_run_at,
  created_at,
  updated_at
"""

MATCHMAKING_COLUMNS = """
  id::text as id,
  filter_json,
  status,
  matched_count,
  job_id::text as job_id,
  created_at,
  completed_at
"""

SUBSCRIPTION_COLUMNS = """
  id::text as id,
  target_url,
  event_types,
  signing_secret,
  is_active,
  created_at,
  updated_at
"""

DELIVERY_LOG_COLUMNS = """
  id::text as id,
  delivery_id,
  subscription_id,
  event_type,
  status,
  attempts_made,
  duration_ms,
  status_code,
  error,
  created_at
"""

DELIVERY_FAILURE_COLUMNS = """
  id::text as id,
  delivery_id,
  subscription_id,
  event_type,
  payload,
  attempts,
  last_error,
  is_resolved,
  replayed_at,
  created_at,
  updated_at
"""


def compute_retry_delay_seconds(*, attempt: int, base_seconds: float, max_seconds: float) -> float:
    if base_seconds <= 0:
        return 0.0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: float,
        job_retry_max_seconds: float,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0.0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0.0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # jobs

    async def create_job(self, *, kind: str, input_payload: dict[str, Any]) -> dict[str, Any]:
        if kind not in JOB_KINDS:
            raise RepositoryValidationError(f"unknown job kind: {kind}")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into jobs (kind, input_payload)
            values ($1, $2::jsonb)
            returning {JOB_COLUMNS}
            """,
            kind,
            json.dumps(input_payload),
        )
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

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
        sort_expr = self._resolve_job_sort_expr(sort_by, order)

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from jobs
            where ($1::text is null or status = $1)
              and ($2::text is null or kind = $2)
            order by {sort_expr}, id desc
            limit $3
            offset $4
            """,
            status,
            kind,
            limit,
            offset,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def has_scrape_job_since(self, *, source: str, zip_code: str, since: datetime) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            """
            select exists (
              select 1
              from jobs
              where kind = 'scrape'
                and input_payload->>'source' = $1
                and input_payload->>'zip' = $2
                and created_at >= $3
            )
            """,
            source,
            zip_code,
            since,
        )
        return bool(found)

    async def claim_next_job(self, *, worker_id: str, lease_seconds: int) -> dict[str, Any] | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_job as (
                      select id
                      from jobs
                      where status = 'queued' and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'running',
                      locked_by = $1,
                      locked_at = now(),
                      lease_expires_at = now() + ($2::int * interval '1 second'),
                      updated_at = now()
                    from next_job n
                    where j.id = n.id
                    returning {JOB_COLUMNS.replace("  id::text", "  j.id::text")}
                    """,
                    worker_id,
                    lease_seconds,
                )
        if not row:
            return None
        return self._job_row_to_dict(row)

    async def complete_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        result_payload: dict[str, Any],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await self._lock_running_job(conn=conn, job_id=job_id, worker_id=worker_id)
                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = 'completed',
                          result_payload = $2::jsonb,
                          locked_by = null,
                          locked_at = null,
                          lease_expires_at = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        json.dumps(result_payload, default=str),
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def fail_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        error_message: str,
        retryable: bool = True,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    locked = await self._lock_running_job(conn=conn, job_id=job_id, worker_id=worker_id)
                    attempt = int(locked["attempt"]) + 1
                    previous_errors = self._coerce_json_list(locked["previous_errors"])
                    previous_errors.append(
                        {"message": error_message, "timestamp": datetime.now(timezone.utc).isoformat()}
                    )

                    resolved_status = "failed"
                    retry_delay_seconds = 0.0
                    if retryable and attempt < self.job_max_attempts:
                        resolved_status = "queued"
                        retry_delay_seconds = compute_retry_delay_seconds(
                            attempt=attempt,
                            base_seconds=self.job_retry_base_seconds,
                            max_seconds=self.job_retry_max_seconds,
                        )

                    row = await conn.fetchrow(
                        f"""
                        update jobs
                        set
                          status = $2,
                          attempt = $3,
                          previous_errors = $4::jsonb,
                          locked_by = null,
                          locked_at = null,
                          lease_expires_at = null,
                          next_run_at = case
                            when $2 = 'queued' then now() + ($5::float8 * interval '1 second')
                            else next_run_at
                          end,
                          updated_at = now()
                        where id = $1::uuid
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        resolved_status,
                        attempt,
                        json.dumps(previous_errors),
                        retry_delay_seconds,
                    )
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def requeue_expired_jobs(self, *, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from jobs
                      where status = 'running'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'queued',
                      locked_by = null,
                      locked_at = null,
                      lease_expires_at = null,
                      next_run_at = now(),
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def job_status_counts(self) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select kind, status, count(*)::int as count
            from jobs
            group by kind, status
            order by kind, status
            """
        )
        return [{"kind": row["kind"], "status": row["status"], "count": row["count"]} for row in rows]

    async def count_enriched_properties(
        self,
        *,
        min_score: float | None = None,
        property_id: str | None = None,
        listing_source: str | None = None,
    ) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval(
            """
            select count(distinct input_payload->>'property_id')::int
            from jobs
            where kind = 'enrich'
              and status = 'completed'
              and ($1::float8 is null or (result_payload->>'score')::float8 >= $1)
              and ($2::text is null or input_payload->>'property_id' = $2)
              and ($3::text is null or input_payload->>'listing_source' = $3)
            """,
            min_score,
            property_id,
            listing_source,
        )
        return int(count or 0)

    # matchmaking

    async def create_matchmaking_job(
        self,
        *,
        matchmaking_job_id: str,
        filter_json: dict[str, Any],
        input_payload: dict[str, Any],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    insert into matchmaking_jobs (id, filter_json, status)
                    values ($1::uuid, $2::jsonb, 'queued')
                    """,
                    matchmaking_job_id,
                    json.dumps(filter_json),
                )
                return await self._attach_matchmaking_queue_job(
                    conn=conn,
                    matchmaking_job_id=matchmaking_job_id,
                    input_payload=input_payload,
                )

    async def requeue_matchmaking_job(
        self,
        *,
        matchmaking_job_id: str,
        input_payload: dict[str, Any],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        "select status from matchmaking_jobs where id = $1::uuid for update",
                        matchmaking_job_id,
                    )
                    if not current:
                        raise RepositoryNotFoundError("matchmaking job not found")
                    if current["status"] in {"queued", "running"}:
                        raise RepositoryConflictError("matchmaking job is still in progress")
                    return await self._attach_matchmaking_queue_job(
                        conn=conn,
                        matchmaking_job_id=matchmaking_job_id,
                        input_payload=input_payload,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("matchmaking job not found") from exc

    async def get_matchmaking_job(self, matchmaking_job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {MATCHMAKING_COLUMNS} from matchmaking_jobs where id = $1::uuid",
                matchmaking_job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("matchmaking job not found") from exc
        if not row:
            raise RepositoryNotFoundError("matchmaking job not found")
        return self._matchmaking_row_to_dict(row)

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update matchmaking_jobs
            set
              status = $2,
              matched_count = coalesce($3, matched_count),
              completed_at = $4,
              updated_at = now()
            where id = $1::uuid
            returning {MATCHMAKING_COLUMNS}
            """,
            matchmaking_job_id,
            status,
            matched_count,
            completed_at,
        )
        if not row:
            raise RepositoryNotFoundError("matchmaking job not found")
        return self._matchmaking_row_to_dict(row)

    async def list_matchmaking_jobs(
        self,
        *,
        status: str | None = None,
        source: str | None = None,
        property_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {MATCHMAKING_COLUMNS}
            from matchmaking_jobs
            where ($1::text is null or status = $1)
              and ($2::text is null or filter_json->>'source' = $2)
              and ($3::text is null or filter_json->>'property_id' = $3)
            order by created_at desc, id desc
            limit $4
            offset $5
            """,
            status,
            source,
            property_id,
            limit,
            offset,
        )
        return [self._matchmaking_row_to_dict(row) for row in rows]

    async def has_auto_matchmaking_job(self, property_id: str) -> bool:
        pool = await self._get_pool()
        found = await pool.fetchval(
            """
            select exists (
              select 1
              from matchmaking_jobs
              where filter_json->>'source' = 'auto'
                and filter_json->>'property_id' = $1
            )
            """,
            property_id,
        )
        return bool(found)

    async def _attach_matchmaking_queue_job(
        self,
        *,
        conn: asyncpg.Connection,
        matchmaking_job_id: str,
        input_payload: dict[str, Any],
    ) -> dict[str, Any]:
        job_id = await conn.fetchval(
            """
            insert into jobs (kind, input_payload)
            values ('matchmake', $1::jsonb)
            returning id::text
            """,
            json.dumps(input_payload),
        )
        row = await conn.fetchrow(
            f"""
            update matchmaking_jobs
            set
              status = 'queued',
              job_id = $2::uuid,
              matched_count = null,
              completed_at = null,
              updated_at = now()
            where id = $1::uuid
            returning {MATCHMAKING_COLUMNS}
            """,
            matchmaking_job_id,
            job_id,
        )
        return self._matchmaking_row_to_dict(row)

    # webhook subscriptions

    async def create_subscription(
        self,
        *,
        target_url: str,
        event_types: list[str],
        signing_secret: str,
        is_active: bool = True,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into webhook_subscriptions (target_url, event_types, signing_secret, is_active)
            values ($1, $2::text[], $3, $4)
            returning {SUBSCRIPTION_COLUMNS}
            """,
            target_url,
            event_types,
            signing_secret,
            is_active,
        )
        return self._subscription_row_to_dict(row)

    async def update_subscription(
        self,
        subscription_id: str,
        *,
        target_url: str | None = None,
        event_types: list[str] | None = None,
        is_active: bool | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update webhook_subscriptions
                set
                  target_url = coalesce($2, target_url),
                  event_types = coalesce($3::text[], event_types),
                  is_active = coalesce($4, is_active),
                  updated_at = now()
                where id = $1::uuid
                returning {SUBSCRIPTION_COLUMNS}
                """,
                subscription_id,
                target_url,
                event_types,
                is_active,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("subscription not found") from exc
        if not row:
            raise RepositoryNotFoundError("subscription not found")
        return self._subscription_row_to_dict(row)

    async def delete_subscription(self, subscription_id: str) -> None:
        pool = await self._get_pool()
        try:
            deleted = await pool.fetchval(
                "delete from webhook_subscriptions where id = $1::uuid returning id::text",
                subscription_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("subscription not found") from exc
        if not deleted:
            raise RepositoryNotFoundError("subscription not found")

    async def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {SUBSCRIPTION_COLUMNS} from webhook_subscriptions where id = $1::uuid",
                subscription_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("subscription not found") from exc
        if not row:
            raise RepositoryNotFoundError("subscription not found")
        return self._subscription_row_to_dict(row)

    async def list_subscriptions(
        self,
        *,
        active_only: bool = False,
        event_type: str | None = None,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {SUBSCRIPTION_COLUMNS}
            from webhook_subscriptions
            where ($1::boolean = false or is_active = true)
              and ($2::text is null or $2 = any(event_types))
            order by created_at desc, id desc
            """,
            active_only,
            event_type,
        )
        return [self._subscription_row_to_dict(row) for row in rows]

    async def count_active_subscriptions(self) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval("select count(*)::int from webhook_subscriptions where is_active = true")
        return int(count or 0)

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into webhook_delivery_logs (
              delivery_id,
              subscription_id,
              event_type,
              status,
              attempts_made,
              duration_ms,
              status_code,
              error
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8)
            returning {DELIVERY_LOG_COLUMNS}
            """,
            delivery_id,
            subscription_id,
            event_type,
            status,
            attempts_made,
            duration_ms,
            status_code,
            error,
        )
        return dict(row)

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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {DELIVERY_LOG_COLUMNS}
            from webhook_delivery_logs
            where ($1::text is null or subscription_id = $1)
              and ($2::text is null or event_type = $2)
              and ($3::text is null or status = $3)
              and ($4::text is null or delivery_id = $4)
            order by created_at desc, seq desc
            limit $5
            offset $6
            """,
            subscription_id,
            event_type,
            status,
            delivery_id,
            limit,
            offset,
        )
        return [dict(row) for row in rows]

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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into webhook_delivery_failures (
              delivery_id,
              subscription_id,
              event_type,
              payload,
              attempts,
              last_error
            )
            values ($1, $2, $3, $4::jsonb, $5, $6)
            returning {DELIVERY_FAILURE_COLUMNS}
            """,
            delivery_id,
            subscription_id,
            event_type,
            json.dumps(payload, default=str),
            attempts,
            last_error,
        )
        return self._failure_row_to_dict(row)

    async def get_delivery_failure(self, failure_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {DELIVERY_FAILURE_COLUMNS} from webhook_delivery_failures where id = $1::uuid",
                failure_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("delivery failure not found") from exc
        if not row:
            raise RepositoryNotFoundError("delivery failure not found")
        return self._failure_row_to_dict(row)

    async def list_delivery_failures(
        self,
        *,
        subscription_id: str | None = None,
        event_type: str | None = None,
        include_resolved: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {DELIVERY_FAILURE_COLUMNS}
            from webhook_delivery_failures
            where ($1::text is null or subscription_id = $1)
              and ($2::text is null or event_type = $2)
              and ($3::boolean = true or is_resolved = false)
            order by created_at desc, id desc
            limit $4
            offset $5
            """,
            subscription_id,
            event_type,
            include_resolved,
            limit,
            offset,
        )
        return [self._failure_row_to_dict(row) for row in rows]

    async def resolve_delivery_failure(self, failure_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update webhook_delivery_failures
            set
              is_resolved = true,
              replayed_at = now(),
              updated_at = now()
            where id = $1::uuid
            returning {DELIVERY_FAILURE_COLUMNS}
            """,
            failure_id,
        )
        if not row:
            raise RepositoryNotFoundError("delivery failure not found")
        return self._failure_row_to_dict(row)

    async def record_failed_replay(self, failure_id: str, *, attempts: int, last_error: str | None) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update webhook_delivery_failures
            set
              attempts = attempts + $2,
              last_error = $3,
              updated_at = now()
            where id = $1::uuid
            returning {DELIVERY_FAILURE_COLUMNS}
            """,
            failure_id,
            attempts,
            last_error,
        )
        if not row:
            raise RepositoryNotFoundError("delivery failure not found")
        return self._failure_row_to_dict(row)

    async def count_unresolved_failures(self) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval("select count(*)::int from webhook_delivery_failures where is_resolved = false")
        return int(count or 0)

    # helpers

    async def _lock_running_job(self, *, conn: asyncpg.Connection, job_id: str, worker_id: str) -> asyncpg.Record:
        locked = await conn.fetchrow(
            """
            select id, status, locked_by, attempt, previous_errors
            from jobs
            where id = $1::uuid
            for update
            """,
            job_id,
        )
        if not locked:
            raise RepositoryNotFoundError("job not found")
        if locked["status"] != "running":
            raise RepositoryConflictError("job is not in running state")
        if locked["locked_by"] != worker_id:
            raise RepositoryForbiddenError("job claimed by another worker")
        return locked

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LEADFLOW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _job_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        result_payload = row["result_payload"]
        return {
            "id": row["id"],
            "kind": row["kind"],
            "input_payload": self._coerce_json_dict(row["input_payload"]),
            "status": row["status"],
            "attempt": int(row["attempt"]),
            "previous_errors": self._coerce_json_list(row["previous_errors"]),
            "result_payload": self._coerce_json_dict(result_payload) if result_payload is not None else None,
            "locked_by": row["locked_by"],
            "lease_expires_at": row["lease_expires_at"],
            "next_run_at": row["next_run_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _matchmaking_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "filter_json": self._coerce_json_dict(row["filter_json"]),
            "status": row["status"],
            "matched_count": row["matched_count"],
            "job_id": row["job_id"],
            "created_at": row["created_at"],
            "completed_at": row["completed_at"],
        }

    @staticmethod
    def _subscription_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "target_url": row["target_url"],
            "event_types": list(row["event_types"] or []),
            "signing_secret": row["signing_secret"],
            "is_active": bool(row["is_active"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    def _failure_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        item = dict(row)
        item["payload"] = self._coerce_json_dict(row["payload"])
        return item

    @staticmethod
    def _resolve_job_sort_expr(sort_by: str, order: str) -> str:
        column = sort_by if sort_by in JOB_SORT_COLUMNS else "created_at"
        direction = "asc" if order.lower() == "asc" else "desc"
        return f"{column} {direction}"

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> "PostgresRepository | InMemoryRepository":
    from leadflow.services.store import InMemoryRepository

    settings = get_settings()
    if not settings.database_url:
        return InMemoryRepository(
            job_max_attempts=settings.job_max_attempts,
            job_retry_base_seconds=settings.job_retry_base_seconds,
            job_retry_max_seconds=settings.job_retry_max_seconds,
        )
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
