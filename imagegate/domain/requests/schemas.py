"""External (JSON) representation of an image request."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from .entities import ImageRequest, RequestStatus


class ImageRequestOut(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: str
    status: RequestStatus
    image_name: str
    request_name: str
    base_image: str
    packages: list[str]
    description: str = ""
    justification: str = ""
    requester_id: str = ""
    approver_id: str | None = None
    rejected_by: str | None = None
    rejection_reason: str | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None
    completed_at: datetime | None = None
    build_completed_at: datetime | None = None
    assembly_id: str | None = None
    custom_name: str | None = None
    image_url: str | None = None
    existing_image: str | None = None
    chainctl_output: str | None = None
    error: str | None = None
    monitored_repo: str | None = None
    monitoring_started_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


def request_to_json(request: ImageRequest) -> dict[str, Any]:
    """camelCase keys, status as string, ISO-8601 timestamps."""
    return ImageRequestOut.model_validate(request).model_dump(mode="json", by_alias=True)
