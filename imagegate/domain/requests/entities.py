# ============================================================
# Business/domain entities
# ============================================================
from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Iterable


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHECKING = "checking"
    EXISTING_IMAGE_FOUND = "existing_image_found"
    BUILDING = "building"
    COMPLETED = "completed"
    NO_CHANGES = "no_changes"
    FAILED = "failed"
    BUILD_COMPLETE = "build_complete"


ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.CHECKING}),
    RequestStatus.CHECKING: frozenset(
        {RequestStatus.EXISTING_IMAGE_FOUND, RequestStatus.BUILDING, RequestStatus.FAILED}
    ),
    RequestStatus.BUILDING: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.NO_CHANGES, RequestStatus.FAILED}
    ),
    # Only a newly created image is ever monitored, see BuildMonitor.
    RequestStatus.COMPLETED: frozenset({RequestStatus.BUILD_COMPLETE}),
    RequestStatus.NO_CHANGES: frozenset(),
    RequestStatus.REJECTED: frozenset(),
    RequestStatus.EXISTING_IMAGE_FOUND: frozenset(),
    RequestStatus.FAILED: frozenset(),
    RequestStatus.BUILD_COMPLETE: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class NewImageRequest:
    """Data supplied by the requester when submitting."""
    image_name: str
    request_name: str
    base_image: str
    packages: tuple[str, ...] = ()
    description: str = ""
    justification: str = ""
    requester_id: str = ""

    @classmethod
    def from_submission(
        cls,
        *,
        request_name: str,
        base_repo: str,
        registry: str,
        packages: Iterable[str] = (),
        description: str = "",
        justification: str = "",
        requester_id: str = "",
    ) -> "NewImageRequest":
        cleaned = tuple(p.strip() for p in packages if p and p.strip())
        return cls(
            image_name=base_repo,
            request_name=request_name,
            base_image=f"{registry}/{base_repo}:latest",
            packages=cleaned,
            description=description,
            justification=justification,
            requester_id=requester_id,
        )


@dataclass
class ImageRequest:
    id: str
    status: RequestStatus
    image_name: str
    request_name: str
    base_image: str
    packages: tuple[str, ...]
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
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


IMMUTABLE_FIELDS = frozenset({"id", "packages", "created_at"})
MUTABLE_FIELDS = frozenset(f.name for f in fields(ImageRequest)) - IMMUTABLE_FIELDS - {"updated_at"}

# Raw tool output kept on the request is bounded.
MAX_TOOL_OUTPUT_CHARS = 4000


def check_changes(changes: dict) -> None:
    """Reject updates to immutable or unknown fields."""
    frozen = IMMUTABLE_FIELDS.intersection(changes)
    if frozen:
        raise ValueError(f"Immutable request fields cannot be updated: {sorted(frozen)}")
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown request fields: {sorted(unknown)}")
