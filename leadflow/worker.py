from __future__ import annotations

import asyncio
import logging

from leadflow.core.config import get_settings
from leadflow.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from leadflow.runtime import build_runtime
from leadflow.services.repository import get_repository

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    if not settings.database_url:
        logger.warning("standalone worker without LEADFLOW_DATABASE_URL only sees its own in-memory jobs")

    repository = get_repository()
    runtime = build_runtime(settings, repository)
    await runtime.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.stop()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
