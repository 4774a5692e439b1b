from fastapi import APIRouter, Depends, HTTPException, Query, status

from leadflow.runtime import get_runtime
from leadflow.schemas.jobs import TriggerSource
from leadflow.schemas.matchmaking import (
    MatchmakingCreateRequest,
    MatchmakingEnqueueOut,
    MatchmakingJobOut,
    MatchmakingStatus,
)
from leadflow.services.queue import JobValidationError
from leadflow.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

router = APIRouter()


@router.post("", response_model=MatchmakingEnqueueOut, status_code=status.HTTP_201_CREATED)
async def create_matchmaking_job(
    payload: MatchmakingCreateRequest,
    runtime=Depends(get_runtime),
) -> MatchmakingEnqueueOut:
    try:
        item = await runtime.queue.enqueue_matchmaking(payload.model_dump(exclude_none=True), source="admin")
    except JobValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "errors": exc.errors},
        ) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return MatchmakingEnqueueOut(matchmaking_job_id=item["id"], job_id=item["job_id"])


@router.get("", response_model=list[MatchmakingJobOut])
async def list_matchmaking_jobs(
    runtime=Depends(get_runtime),
    status_filter: MatchmakingStatus | None = Query(default=None, alias="status"),
    source: TriggerSource | None = Query(default=None),
    property_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[MatchmakingJobOut]:
    try:
        rows = await runtime.repository.list_matchmaking_jobs(
            status=status_filter,
            source=source,
            property_id=property_id,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [MatchmakingJobOut(**row) for row in rows]


@router.get("/{matchmaking_job_id}", response_model=MatchmakingJobOut)
async def get_matchmaking_job(matchmaking_job_id: str, runtime=Depends(get_runtime)) -> MatchmakingJobOut:
    try:
        row = await runtime.repository.get_matchmaking_job(matchmaking_job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return MatchmakingJobOut(**row)


@router.post("/{matchmaking_job_id}/replay", response_model=MatchmakingEnqueueOut, status_code=status.HTTP_202_ACCEPTED)
async def replay_matchmaking_job(matchmaking_job_id: str, runtime=Depends(get_runtime)) -> MatchmakingEnqueueOut:
    try:
        row = await runtime.queue.replay_matchmaking(matchmaking_job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return MatchmakingEnqueueOut(matchmaking_job_id=row["id"], job_id=row["job_id"])
