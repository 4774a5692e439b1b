from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ValidationError


class NonRetryableJobError(Exception):
    """Failure that retrying cannot fix; the job goes straight to failed."""


def parse_payload(model: type[BaseModel], job: dict[str, Any]) -> Any:
    try:
        return model.model_validate(job.get("input_payload") or {})
    except ValidationError as exc:
        raise NonRetryableJobError(f"invalid {job.get('kind')} payload: {exc.error_count()} error(s)") from exc
