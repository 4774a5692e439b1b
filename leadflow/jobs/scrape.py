from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from leadflow.jobs.adapters import apply_filters
from leadflow.jobs.payloads import NonRetryableJobError, parse_payload
from leadflow.schemas.jobs import ScrapePayload

if TYPE_CHECKING:
    from leadflow.jobs.executor import JobContext

logger = logging.getLogger(__name__)


async def execute_scrape(job: dict[str, Any], context: "JobContext") -> dict[str, Any]:
    payload: ScrapePayload = parse_payload(ScrapePayload, job)
    adapter = context.adapters.get(payload.source)
    if adapter is None:
        raise NonRetryableJobError(f"unsupported_source: {payload.source}")

    filters = payload.filters.model_dump(exclude_none=True) if payload.filters else {}
    max_pages = payload.options.max_pages if payload.options else 3

    started = time.perf_counter()
    fetched = await adapter.fetch(
        payload.zip,
        from_date=payload.from_date,
        to_date=payload.to_date,
        max_pages=max_pages,
    )
    items = apply_filters(fetched.items, filters)
    duration_ms = int((time.perf_counter() - started) * 1000)

    logger.info(
        "scrape finished job_id=%s source=%s zip=%s total=%s kept=%s errors=%s",
        job.get("id"),
        payload.source,
        payload.zip,
        len(fetched.items),
        len(items),
        len(fetched.errors),
    )
    return {
        "items": items,
        "meta": {
            "source": payload.source,
            "zip": payload.zip,
            "scraped_count": len(items),
            "total_items": len(fetched.items),
            "filtered_out_count": len(fetched.items) - len(items),
            "filters_applied": sorted(filters),
            "source_adapter_version": adapter.version,
            "duration_ms": duration_ms,
            "errors_count": len(fetched.errors),
        },
    }
