"""Image requests: entities, lifecycle statuses and the request store."""
from .entities import (
    ALLOWED_TRANSITIONS,
    ImageRequest,
    NewImageRequest,
    RequestStatus,
    can_transition,
)
from .repository import InMemoryRequestStore, RequestStore, SqlRequestStore
