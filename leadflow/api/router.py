from fastapi import APIRouter

from leadflow.api.routes import health, jobs, matchmaking, metrics, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(metrics.router, tags=["observability"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(matchmaking.router, prefix="/matchmaking-jobs", tags=["matchmaking"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
