from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

JobKind = Literal["scrape", "enrich", "matchmake"]
JobStatus = Literal["queued", "running", "completed", "failed"]
ScrapeSource = Literal["zillow", "auction"]
VendorProviderName = Literal["attom", "batchdata"]
TriggerSource = Literal["admin", "auto"]


class ScrapeFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_price: float | None = Field(default=None, ge=0)
    max_price: float | None = Field(default=None, ge=0)
    beds: int | None = Field(default=None, ge=0)
    property_types: list[str] | None = None
    min_sqft: int | None = Field(default=None, ge=0)


class ScrapeOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_pages: int = Field(default=3, ge=1, le=10)


class ScrapePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: ScrapeSource
    zip: str = Field(pattern=r"^\d{5}$")
    from_date: date | None = None
    to_date: date | None = None
    filters: ScrapeFilters | None = None
    options: ScrapeOptions | None = None

    @model_validator(mode="after")
    def check_date_range(self) -> "ScrapePayload":
        if (self.from_date is None) != (self.to_date is None):
            raise ValueError("from_date and to_date must both be present or both absent")
        if self.from_date is not None and self.to_date is not None and self.from_date > self.to_date:
            raise ValueError("from_date must be on or before to_date")
        return self


class EnrichPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    property_id: str = Field(min_length=1)
    address: str = Field(min_length=3)
    city: str | None = None
    state: str | None = Field(default=None, min_length=2, max_length=2)
    zip: str = Field(pattern=r"^\d{5}$")
    provider: VendorProviderName = "attom"
    listing_source: ScrapeSource | None = None


class MatchmakingFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_score: float | None = Field(default=None, ge=0, le=100)
    property_id: str | None = Field(default=None, min_length=1)
    listing_source: ScrapeSource | None = None
    source: TriggerSource = "admin"


class MatchmakePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    matchmaking_job_id: str = Field(min_length=1)
    filter: MatchmakingFilter


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "scrape": ScrapePayload,
    "enrich": EnrichPayload,
    "matchmake": MatchmakePayload,
}


class PreviousError(BaseModel):
    message: str
    timestamp: datetime


class JobOut(BaseModel):
    id: str
    kind: JobKind
    input_payload: dict[str, Any] = Field(default_factory=dict)
    status: JobStatus
    attempt: int
    previous_errors: list[PreviousError] = Field(default_factory=list)
    result_payload: dict[str, Any] | None = None
    locked_by: str | None = None
    next_run_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class JobEnqueueRequest(BaseModel):
    kind: Literal["scrape", "enrich"]
    input_payload: dict[str, Any] = Field(default_factory=dict)


class BulkEnqueueRequest(BaseModel):
    sources: list[str] = Field(default_factory=list)
    zips: list[str] | None = None
    counties: list[str] | None = None
    from_date: date | None = None
    to_date: date | None = None
    filters: dict[str, Any] | None = None


class BulkCreatedItem(BaseModel):
    id: str
    source: str
    zip: str


class BulkSkippedItem(BaseModel):
    source: str
    zip: str | None = None
    reason: str


class BulkEnqueueOut(BaseModel):
    created_count: int
    skipped_count: int
    created: list[BulkCreatedItem] = Field(default_factory=list)
    skipped: list[BulkSkippedItem] = Field(default_factory=list)
    resolved_zips: list[str] | None = None
