from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable

import httpx
from opentelemetry import trace

from leadflow.core.config import Settings
from leadflow.services.metrics import REGISTRY, MetricsRegistry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class VendorError(Exception):
    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class CapExceeded(VendorError):
    """Daily spend cap would be exceeded by this call."""


class TransientVendorError(VendorError):
    def __init__(self, provider: str, message: str, attempts: int) -> None:
        super().__init__(provider, message)
        self.attempts = attempts


class PermanentVendorError(VendorError):
    def __init__(self, provider: str, message: str, status_code: int | None = None) -> None:
        super().__init__(provider, message)
        self.status_code = status_code


@dataclass(frozen=True)
class VendorRequest:
    path: str
    method: str = "GET"
    params: dict[str, Any] = field(default_factory=dict)
    json_body: dict[str, Any] | None = None


@dataclass
class NormalizedProperty:
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    owner_name: str | None = None
    property_type: str | None = None
    market_value: float | None = None
    last_sale_price: float | None = None
    equity_percent: float | None = None
    is_absentee_owner: bool | None = None
    distress_flags: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class VendorResponse:
    provider: str
    property: NormalizedProperty
    cached: bool
    cost_cents: int
    duration_ms: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_backoff_ms(retry_index: int, *, base_ms: float, cap_ms: float) -> float:
    delay = min(base_ms * (2**retry_index), cap_ms)
    return delay * random.uniform(0.8, 1.2)


class SpendLedger:
    """Per-provider daily spend accumulator, reset lazily at UTC midnight."""

    def __init__(self, daily_cap_cents: int, now: Callable[[], datetime] = _utcnow) -> None:
        self.daily_cap_cents = daily_cap_cents
        self._now = now
        self._lock = asyncio.Lock()
        self._day: date = now().date()
        self._spent_cents = 0

    @property
    def spent_today_cents(self) -> int:
        self._roll_day()
        return self._spent_cents

    async def reserve(self, provider: str, cost_cents: int) -> None:
        async with self._lock:
            self._roll_day()
            if self._spent_cents + cost_cents > self.daily_cap_cents:
                raise CapExceeded(
                    provider,
                    f"daily cap {self.daily_cap_cents}c reached (spent {self._spent_cents}c, cost {cost_cents}c)",
                )
            self._spent_cents += cost_cents

    async def release(self, cost_cents: int) -> None:
        async with self._lock:
            self._roll_day()
            self._spent_cents = max(0, self._spent_cents - cost_cents)

    def _roll_day(self) -> None:
        today = self._now().date()
        if today != self._day:
            self._day = today
            self._spent_cents = 0


class ResponseCache:
    """TTL cache keyed by normalized request.

    Entries are kept in insertion order and every entry shares one TTL, so the
    oldest entry is always the next to expire.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: dict[str, tuple[float, VendorResponse]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @staticmethod
    def cache_key(provider: str, request: VendorRequest) -> str:
        def normalize(value: Any) -> Any:
            if isinstance(value, str):
                return value.strip().lower()
            if isinstance(value, dict):
                return {str(key): normalize(item) for key, item in value.items()}
            if isinstance(value, (list, tuple)):
                return [normalize(item) for item in value]
            return value

        material = {
            "method": request.method.upper(),
            "path": request.path,
            "params": normalize(request.params),
            "json": normalize(request.json_body or {}),
        }
        return f"{provider}:{json.dumps(material, sort_keys=True, default=str)}"

    def get(self, key: str) -> VendorResponse | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: VendorResponse) -> None:
        if self.ttl_seconds <= 0:
            return
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = (now + self.ttl_seconds, value)
        self._prune(now)

    def _prune(self, now: float) -> None:
        while self._entries:
            oldest = next(iter(self._entries))
            expires_at, _ = self._entries[oldest]
            if expires_at > now and len(self._entries) <= self.max_entries:
                break
            del self._entries[oldest]

    def clear(self) -> None:
        self._entries.clear()


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class VendorProvider:
    name = "generic"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        cost_per_call_cents: int,
        daily_cap_cents: int,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.cost_per_call_cents = cost_per_call_cents
        self.daily_cap_cents = daily_cap_cents

    def headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    def lookup_request(self, *, address: str, city: str | None, state: str | None, zip_code: str) -> VendorRequest:
        raise NotImplementedError

    def normalize(self, raw: dict[str, Any]) -> NormalizedProperty:
        raise NotImplementedError


class AttomProvider(VendorProvider):
    name = "attom"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.api_key:
            headers["apikey"] = self.api_key
        return headers

    def lookup_request(self, *, address: str, city: str | None, state: str | None, zip_code: str) -> VendorRequest:
        locality = ", ".join(part for part in (city, f"{state or ''} {zip_code}".strip()) if part)
        return VendorRequest(path="/property/expandedprofile", params={"address1": address, "address2": locality})

    def normalize(self, raw: dict[str, Any]) -> NormalizedProperty:
        properties = raw.get("property") or []
        record = properties[0] if properties and isinstance(properties[0], dict) else {}
        address = record.get("address") or {}
        summary = record.get("summary") or {}
        owner = (record.get("owner") or {}).get("owner1") or {}
        market = (record.get("assessment") or {}).get("market") or {}
        sale = (record.get("sale") or {}).get("amount") or {}
        mortgage = (record.get("mortgage") or {}).get("amount")

        market_value = _to_float(market.get("mktttlvalue"))
        equity_percent = None
        mortgage_amount = _to_float(mortgage)
        if market_value and mortgage_amount is not None:
            equity_percent = round((market_value - mortgage_amount) / market_value * 100, 2)

        absentee = summary.get("absenteeInd")
        flags = []
        if str(summary.get("REOflag") or "").upper() in {"Y", "TRUE"}:
            flags.append("reo")
        if record.get("foreclosure"):
            flags.append("foreclosure")

        return NormalizedProperty(
            address=address.get("line1"),
            city=address.get("locality"),
            state=address.get("countrySubd"),
            zip=address.get("postal1"),
            owner_name=owner.get("fullName") or owner.get("lastName"),
            property_type=summary.get("proptype") or summary.get("propclass"),
            market_value=market_value,
            last_sale_price=_to_float(sale.get("saleamt")),
            equity_percent=equity_percent,
            is_absentee_owner=None if absentee is None else str(absentee).upper().startswith("ABSENTEE"),
            distress_flags=flags,
            raw=raw,
        )


class BatchDataProvider(VendorProvider):
    name = "batchdata"

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def lookup_request(self, *, address: str, city: str | None, state: str | None, zip_code: str) -> VendorRequest:
        return VendorRequest(
            path="/property/lookup/all-attributes",
            method="POST",
            json_body={
                "requests": [
                    {"address": {"street": address, "city": city or "", "state": state or "", "zip": zip_code}}
                ]
            },
        )

    def normalize(self, raw: dict[str, Any]) -> NormalizedProperty:
        properties = (raw.get("results") or {}).get("properties") or []
        record = properties[0] if properties and isinstance(properties[0], dict) else {}
        address = record.get("address") or {}
        owner = record.get("owner") or {}
        general = record.get("general") or {}
        valuation = record.get("valuation") or {}
        last_sale = (record.get("sale") or {}).get("lastSale") or {}
        quick_lists = record.get("quickLists") or {}

        flags = [
            flag
            for flag, key in (
                ("pre_foreclosure", "preforeclosure"),
                ("tax_default", "taxDefault"),
                ("vacant", "vacant"),
                ("high_equity", "highEquity"),
            )
            if quick_lists.get(key)
        ]

        return NormalizedProperty(
            address=address.get("street"),
            city=address.get("city"),
            state=address.get("state"),
            zip=address.get("zip"),
            owner_name=owner.get("fullName"),
            property_type=general.get("propertyTypeDetail") or general.get("propertyTypeCategory"),
            market_value=_to_float(valuation.get("estimatedValue")),
            last_sale_price=_to_float(last_sale.get("price")),
            equity_percent=_to_float(valuation.get("equityPercent")),
            is_absentee_owner=quick_lists.get("absenteeOwner"),
            distress_flags=flags,
            raw=raw,
        )


def build_providers(settings: Settings) -> dict[str, VendorProvider]:
    return {
        "attom": AttomProvider(
            base_url=settings.attom_base_url,
            api_key=settings.attom_api_key,
            cost_per_call_cents=settings.attom_cost_per_call_cents,
            daily_cap_cents=settings.attom_daily_cap_cents,
        ),
        "batchdata": BatchDataProvider(
            base_url=settings.batchdata_base_url,
            api_key=settings.batchdata_api_key,
            cost_per_call_cents=settings.batchdata_cost_per_call_cents,
            daily_cap_cents=settings.batchdata_daily_cap_cents,
        ),
    }


class VendorGateway:
    """Single choke point for paid data-provider calls.

    Order per call: cache lookup, spend reservation, HTTP with bounded retry,
    normalization. A cache hit never touches the ledger or the network.
    """

    def __init__(
        self,
        providers: dict[str, VendorProvider],
        *,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_base_ms: float = 250.0,
        retry_cap_ms: float = 4000.0,
        cache_ttl_seconds: float = 900.0,
        cache_max_entries: int = 10_000,
        metrics: MetricsRegistry = REGISTRY,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.providers = providers
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_ms = retry_base_ms
        self.retry_cap_ms = retry_cap_ms
        self.metrics = metrics
        self.cache = ResponseCache(cache_ttl_seconds, max_entries=cache_max_entries)
        self.ledgers = {
            name: SpendLedger(provider.daily_cap_cents, now=now) for name, provider in providers.items()
        }
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "VendorGateway":
        return cls(
            build_providers(settings),
            timeout_seconds=settings.vendor_timeout_seconds,
            max_attempts=settings.vendor_max_attempts,
            retry_base_ms=settings.vendor_retry_base_ms,
            retry_cap_ms=settings.vendor_retry_cap_ms,
            cache_ttl_seconds=settings.vendor_cache_ttl_seconds,
            cache_max_entries=settings.vendor_cache_max_entries,
            **kwargs,
        )

    async def lookup_property(
        self,
        provider_name: str,
        *,
        address: str,
        city: str | None,
        state: str | None,
        zip_code: str,
    ) -> VendorResponse:
        provider = self._provider(provider_name)
        request = provider.lookup_request(address=address, city=city, state=state, zip_code=zip_code)
        return await self.call(provider_name, request)

    async def call(self, provider_name: str, request: VendorRequest) -> VendorResponse:
        provider = self._provider(provider_name)
        key = ResponseCache.cache_key(provider_name, request)

        with tracer.start_as_current_span("vendor.call") as span:
            span.set_attribute("vendor.provider", provider_name)
            span.set_attribute("vendor.path", request.path)

            hit = self.cache.get(key)
            if hit is not None:
                span.set_attribute("vendor.cached", True)
                self.metrics.inc("vendor_calls_total", {"provider": provider_name, "outcome": "cache_hit"})
                logger.debug("vendor cache hit provider=%s path=%s", provider_name, request.path)
                return replace(hit, cached=True, cost_cents=0, duration_ms=0)

            cost = provider.cost_per_call_cents
            ledger = self.ledgers[provider_name]
            try:
                await ledger.reserve(provider_name, cost)
            except CapExceeded:
                self.metrics.inc("vendor_calls_total", {"provider": provider_name, "outcome": "cap_exceeded"})
                logger.warning(
                    "vendor cap exceeded provider=%s spent_cents=%s cap_cents=%s",
                    provider_name,
                    ledger.spent_today_cents,
                    ledger.daily_cap_cents,
                )
                raise

            started = time.perf_counter()
            try:
                raw = await self._send_with_retry(provider, request)
            except VendorError as exc:
                await ledger.release(cost)
                duration_ms = int((time.perf_counter() - started) * 1000)
                outcome = "permanent_error" if isinstance(exc, PermanentVendorError) else "transient_error"
                self.metrics.inc("vendor_calls_total", {"provider": provider_name, "outcome": outcome})
                self.metrics.observe("vendor_call_ms", duration_ms, {"provider": provider_name})
                logger.warning(
                    "vendor call failed provider=%s path=%s outcome=%s duration_ms=%s error=%s",
                    provider_name,
                    request.path,
                    outcome,
                    duration_ms,
                    exc,
                )
                raise

            duration_ms = int((time.perf_counter() - started) * 1000)
            self.metrics.inc("vendor_spend_cents_total", {"provider": provider_name}, amount=cost)
            self.metrics.observe("vendor_call_ms", duration_ms, {"provider": provider_name})
            try:
                normalized = provider.normalize(raw)
            except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
                # Billed by the vendor; keep the reservation and stop the job from paying again.
                self.metrics.inc("vendor_calls_total", {"provider": provider_name, "outcome": "permanent_error"})
                logger.warning(
                    "vendor body not normalizable provider=%s path=%s error=%s: %s",
                    provider_name,
                    request.path,
                    type(exc).__name__,
                    exc,
                )
                raise PermanentVendorError(provider_name, f"unexpected body shape: {type(exc).__name__}") from exc

            response = VendorResponse(
                provider=provider_name,
                property=normalized,
                cached=False,
                cost_cents=cost,
                duration_ms=duration_ms,
            )
            self.cache.set(key, response)
            self.metrics.inc("vendor_calls_total", {"provider": provider_name, "outcome": "success"})
            logger.info(
                "vendor call ok provider=%s path=%s duration_ms=%s cost_cents=%s",
                provider_name,
                request.path,
                duration_ms,
                cost,
            )
            return response

    async def _send_with_retry(self, provider: VendorProvider, request: VendorRequest) -> dict[str, Any]:
        url = f"{provider.base_url}{request.path}"
        last_error = "no attempts made"
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            for attempt in range(self.max_attempts):
                try:
                    response = await client.request(
                        request.method,
                        url,
                        params=request.params or None,
                        json=request.json_body,
                        headers=provider.headers(),
                    )
                except httpx.TransportError as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                else:
                    status = response.status_code
                    if status == 429 or status >= 500:
                        last_error = f"http {status}"
                    elif status >= 400:
                        raise PermanentVendorError(provider.name, f"http {status}", status_code=status)
                    else:
                        try:
                            payload = response.json()
                        except ValueError as exc:
                            raise PermanentVendorError(provider.name, "invalid json body", status_code=status) from exc
                        if not isinstance(payload, dict):
                            raise PermanentVendorError(provider.name, "unexpected body shape", status_code=status)
                        return payload

                if attempt + 1 < self.max_attempts:
                    delay_ms = compute_backoff_ms(attempt, base_ms=self.retry_base_ms, cap_ms=self.retry_cap_ms)
                    logger.info(
                        "vendor retry provider=%s attempt=%s error=%s delay_ms=%.0f",
                        provider.name,
                        attempt + 1,
                        last_error,
                        delay_ms,
                    )
                    await self._sleep(delay_ms / 1000)

        raise TransientVendorError(provider.name, last_error, attempts=self.max_attempts)

    def _provider(self, provider_name: str) -> VendorProvider:
        provider = self.providers.get(provider_name)
        if provider is None:
            raise PermanentVendorError(provider_name, "unknown provider")
        return provider
