from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from leadflow.schemas.jobs import ScrapeSource

MatchmakingStatus = Literal["queued", "running", "completed", "failed"]


class MatchmakingCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_score: float | None = Field(default=None, ge=0, le=100)
    property_id: str | None = Field(default=None, min_length=1)
    listing_source: ScrapeSource | None = None


class MatchmakingJobOut(BaseModel):
    id: str
    filter_json: dict[str, Any] = Field(default_factory=dict)
    status: MatchmakingStatus
    matched_count: int | None = None
    job_id: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class MatchmakingEnqueueOut(BaseModel):
    matchmaking_job_id: str
    job_id: str
