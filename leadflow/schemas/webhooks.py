from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

DeliveryStatus = Literal["delivered", "failed"]


def _check_target_url(value: str) -> str:
    stripped = value.strip()
    if not stripped.lower().startswith(("http://", "https://")):
        raise ValueError("target_url must be an http(s) URL")
    return stripped


def _check_event_types(value: list[str]) -> list[str]:
    cleaned = [item.strip() for item in value if item and item.strip()]
    if not cleaned:
        raise ValueError("event_types must contain at least one event name")
    return sorted(set(cleaned))


class SubscriptionCreateRequest(BaseModel):
    target_url: str
    event_types: list[str]
    signing_secret: str | None = Field(default=None, min_length=16)
    is_active: bool = True

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, value: str) -> str:
        return _check_target_url(value)

    @field_validator("event_types")
    @classmethod
    def validate_event_types(cls, value: list[str]) -> list[str]:
        return _check_event_types(value)


class SubscriptionPatchRequest(BaseModel):
    target_url: str | None = None
    event_types: list[str] | None = None
    is_active: bool | None = None

    @field_validator("target_url")
    @classmethod
    def validate_target_url(cls, value: str | None) -> str | None:
        return None if value is None else _check_target_url(value)

    @field_validator("event_types")
    @classmethod
    def validate_event_types(cls, value: list[str] | None) -> list[str] | None:
        return None if value is None else _check_event_types(value)


class SubscriptionOut(BaseModel):
    id: str
    target_url: str
    event_types: list[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class SubscriptionCreatedOut(SubscriptionOut):
    signing_secret: str


class DeliveryLogOut(BaseModel):
    id: str
    delivery_id: str
    subscription_id: str
    event_type: str
    status: DeliveryStatus
    attempts_made: int
    duration_ms: int
    status_code: int | None = None
    error: str | None = None
    created_at: datetime


class DeliveryFailureOut(BaseModel):
    id: str
    delivery_id: str
    subscription_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int
    last_error: str | None = None
    is_resolved: bool
    replayed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class ReplayOut(BaseModel):
    failure_id: str
    delivery_id: str
    replayed: bool = True


class ReplayAllRequest(BaseModel):
    event_type: str | None = None
    subscription_id: str | None = None


class ReplayAllOut(BaseModel):
    replayed: int


class SendTestEventRequest(BaseModel):
    subscription_id: str
    event_type: str = "test.event"
    payload: dict[str, Any] = Field(default_factory=lambda: {"ok": True})


class SendTestEventOut(BaseModel):
    queued: bool
    delivery_id: str


class VerifyEndpointRequest(BaseModel):
    url: str
    event_type: str = "webhook.challenge"

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return _check_target_url(value)


class VerifyEndpointOut(BaseModel):
    delivered: bool
    status: int
    duration_ms: int
    error: str | None = None


class DeliverySummaryOut(BaseModel):
    delivered: int
    failed: int
    p50_ms: int
    p95_ms: int
    active_subscriptions: int
