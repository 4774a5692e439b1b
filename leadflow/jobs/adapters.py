from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    items: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class SourceAdapter(Protocol):
    name: str
    version: str

    async def fetch(
        self,
        zip_code: str,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
        max_pages: int = 3,
    ) -> FetchResult: ...


class HttpSourceAdapter:
    """Pulls listing pages from a scraper service exposing GET /listings.

    A failure on the first page propagates so the job is retried; later page
    failures end pagination and are reported in the result.
    """

    version = "http-1.0"

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch(
        self,
        zip_code: str,
        *,
        from_date: date | None = None,
        to_date: date | None = None,
        max_pages: int = 3,
    ) -> FetchResult:
        result = FetchResult()
        params: dict[str, Any] = {"zip": zip_code}
        if from_date is not None and to_date is not None:
            params["from_date"] = from_date.isoformat()
            params["to_date"] = to_date.isoformat()

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            for page in range(1, max_pages + 1):
                try:
                    response = await client.get(f"{self.base_url}/listings", params={**params, "page": page})
                    response.raise_for_status()
                    body = response.json()
                except (httpx.HTTPError, ValueError) as exc:
                    if page == 1:
                        raise
                    result.errors.append(f"page {page}: {exc}")
                    logger.warning("scrape page failed source=%s zip=%s page=%s error=%s", self.name, zip_code, page, exc)
                    break

                items = body.get("items") if isinstance(body, dict) else None
                if not isinstance(items, list):
                    result.errors.append(f"page {page}: missing items")
                    break
                result.items.extend(item for item in items if isinstance(item, dict))
                if not body.get("has_more"):
                    break
        return result


def build_source_adapters(source_urls: dict[str, str], *, timeout_seconds: float) -> dict[str, SourceAdapter]:
    return {
        name: HttpSourceAdapter(name, url, timeout_seconds=timeout_seconds) for name, url in source_urls.items()
    }


def _number(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def apply_filters(items: list[dict[str, Any]], filters: dict[str, Any] | None) -> list[dict[str, Any]]:
    """Keep items matching every configured filter. Items missing a filtered field are dropped."""
    if not filters:
        return list(items)

    min_price = filters.get("min_price")
    max_price = filters.get("max_price")
    beds = filters.get("beds")
    min_sqft = filters.get("min_sqft")
    property_types = {str(value).lower() for value in filters.get("property_types") or []}

    kept: list[dict[str, Any]] = []
    for item in items:
        price = _number(item.get("price"))
        if min_price is not None and (price is None or price < min_price):
            continue
        if max_price is not None and (price is None or price > max_price):
            continue
        if beds is not None:
            item_beds = _number(item.get("beds"))
            if item_beds is None or item_beds < beds:
                continue
        if min_sqft is not None:
            sqft = _number(item.get("sqft"))
            if sqft is None or sqft < min_sqft:
                continue
        if property_types and str(item.get("property_type") or "").lower() not in property_types:
            continue
        kept.append(item)
    return kept
