from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from leadflow.jobs.payloads import parse_payload
from leadflow.schemas.jobs import EnrichPayload
from leadflow.services.vendor import NormalizedProperty

if TYPE_CHECKING:
    from leadflow.jobs.executor import JobContext

logger = logging.getLogger(__name__)


@dataclass
class ScoreResult:
    score: float
    tags: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)


class Scorer(Protocol):
    def score(self, prop: NormalizedProperty) -> ScoreResult: ...


class HeuristicScorer:
    """Rule-based lead score in [0, 100]; a stand-in until a trained model is wired in."""

    base_score = 30.0

    def score(self, prop: NormalizedProperty) -> ScoreResult:
        score = self.base_score
        tags: list[str] = []
        reasons: list[str] = []

        if prop.is_absentee_owner:
            score += 15
            tags.append("absenteeOwner")
            reasons.append("owner does not live at the property")
        if prop.equity_percent is not None and prop.equity_percent >= 50:
            score += 20
            tags.append("highEquity")
            reasons.append(f"equity at {prop.equity_percent:.0f}%")
        if prop.market_value and prop.last_sale_price and prop.last_sale_price < prop.market_value * 0.6:
            score += 10
            reasons.append("last sale well below market value")

        flags = set(prop.distress_flags)
        if flags & {"pre_foreclosure", "foreclosure", "tax_default"}:
            score += 25
            tags.append("urgentSeller")
            reasons.append("distress: " + ", ".join(sorted(flags)))
        elif flags:
            score += 10
            reasons.append("flags: " + ", ".join(sorted(flags)))

        score = max(0.0, min(100.0, score))
        if score >= 80:
            tags.append("highIntent")
        return ScoreResult(score=score, tags=tags, reasons=reasons)


async def execute_enrich(job: dict[str, Any], context: "JobContext") -> dict[str, Any]:
    payload: EnrichPayload = parse_payload(EnrichPayload, job)

    started = time.perf_counter()
    response = await context.gateway.lookup_property(
        payload.provider,
        address=payload.address,
        city=payload.city,
        state=payload.state,
        zip_code=payload.zip,
    )
    scored = context.scorer.score(response.property)
    duration_ms = int((time.perf_counter() - started) * 1000)
    context.metrics.observe("enrichment_duration_ms", duration_ms, {"provider": payload.provider})

    prop = response.property.to_dict()
    prop.pop("raw", None)
    logger.info(
        "enrich finished job_id=%s property_id=%s provider=%s score=%.1f cached=%s",
        job.get("id"),
        payload.property_id,
        payload.provider,
        scored.score,
        response.cached,
    )
    return {
        "property_id": payload.property_id,
        "score": scored.score,
        "tags": scored.tags,
        "reasons": scored.reasons,
        "property": prop,
        "meta": {
            "provider": payload.provider,
            "cached": response.cached,
            "duration_ms": duration_ms,
        },
    }
