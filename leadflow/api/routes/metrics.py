from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse

from leadflow.runtime import get_runtime
from leadflow.services.metrics import render_metrics
from leadflow.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(runtime=Depends(get_runtime)) -> PlainTextResponse:
    try:
        body = await render_metrics(runtime.metrics, runtime.repository, runtime.settings)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PlainTextResponse(body, media_type="text/plain; version=0.0.4")
