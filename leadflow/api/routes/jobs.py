from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from leadflow.runtime import get_runtime
from leadflow.schemas.jobs import (
    BulkEnqueueOut,
    BulkEnqueueRequest,
    JobEnqueueRequest,
    JobKind,
    JobOut,
    JobStatus,
)
from leadflow.services.queue import JobValidationError
from leadflow.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


def _validation_error(exc: JobValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"message": str(exc), "errors": exc.errors},
    )


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def enqueue_job(payload: JobEnqueueRequest, runtime=Depends(get_runtime)) -> JobOut:
    try:
        job = await runtime.queue.enqueue(payload.kind, payload.input_payload)
    except JobValidationError as exc:
        raise _validation_error(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobOut(**job)


@router.post("/bulk", response_model=BulkEnqueueOut, status_code=status.HTTP_201_CREATED)
async def enqueue_bulk(payload: BulkEnqueueRequest, runtime=Depends(get_runtime)) -> BulkEnqueueOut:
    try:
        result = await runtime.queue.enqueue_bulk(
            payload.sources,
            zips=payload.zips,
            counties=payload.counties,
            from_date=payload.from_date,
            to_date=payload.to_date,
            filters=payload.filters,
        )
    except JobValidationError as exc:
        raise _validation_error(exc) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return BulkEnqueueOut(
        created_count=len(result.created),
        skipped_count=len(result.skipped),
        created=result.created,
        skipped=result.skipped,
        resolved_zips=result.resolved_zips,
    )


@router.get("", response_model=list[JobOut])
async def list_jobs(
    runtime=Depends(get_runtime),
    status_filter: JobStatus | None = Query(default=None, alias="status"),
    kind: JobKind | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    sort_by: Literal["created_at", "updated_at"] = Query(default="created_at"),
    order: Literal["asc", "desc"] = Query(default="desc"),
) -> list[JobOut]:
    try:
        rows = await runtime.queue.list_jobs(
            status=status_filter,
            kind=kind,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            order=order,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return [JobOut(**row) for row in rows]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, runtime=Depends(get_runtime)) -> JobOut:
    try:
        job = await runtime.queue.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JobOut(**job)
