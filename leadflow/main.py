from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from leadflow.api.router import api_router
from leadflow.core.config import Settings, get_settings
from leadflow.core.telemetry import configure_logging, setup_api_telemetry, shutdown_api_telemetry
from leadflow.runtime import get_runtime
from leadflow.services.repository import get_repository

logger = logging.getLogger("leadflow.http")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    configure_logging()
    pipeline = get_runtime()
    if settings.run_workers:
        await pipeline.start()
        logger.info("in-process workers started count=%s", settings.worker_concurrency)
    try:
        yield
    finally:
        await pipeline.stop()
        shutdown_api_telemetry(app, app.state.telemetry)
        await get_repository().close()
        get_runtime.cache_clear()
        get_repository.cache_clear()


async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s in %.2fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    application = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
    application.state.settings = settings
    application.state.telemetry = setup_api_telemetry(application, settings)
    application.middleware("http")(log_requests)
    application.include_router(api_router)
    return application


app = create_app()
