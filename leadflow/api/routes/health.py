from fastapi import APIRouter, Depends, HTTPException, status

from leadflow.runtime import Runtime, get_runtime
from leadflow.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness only; never touches the database."""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(runtime: Runtime = Depends(get_runtime)) -> dict[str, str]:
    try:
        await runtime.repository.job_status_counts()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"repository unavailable: {exc}") from exc
    workers = "running" if runtime.started else "stopped"
    return {"status": "ready", "workers": workers}
