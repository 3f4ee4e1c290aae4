"""Lifecycle events.

Every request transition is published as a structured event so the chat
collaborator can render notifications. Delivery is best-effort: a sink that
fails is logged and never affects the request lifecycle.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from imagegate.domain.requests.entities import ImageRequest, utcnow
from imagegate.domain.requests.schemas import request_to_json
from imagegate.observability.tracing import log_event


class LifecycleEvent(BaseModel):
    """One request transition."""
    type: str
    request_id: str
    status: str
    occurred_at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)
    request: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_request(cls, event_type: str, request: ImageRequest, **data: Any) -> "LifecycleEvent":
        return cls(
            type=event_type,
            request_id=request.id,
            status=request.status.value,
            data=data,
            request=request_to_json(request),
        )


class EventSink(Protocol):
    async def publish(self, event: LifecycleEvent) -> None:
        ...


class NoopEventSink:
    async def publish(self, event: LifecycleEvent) -> None:
        return None


class HttpEventNotifier:
    """POST lifecycle events to the chat collaborator's webhook."""

    def __init__(self, url: str, client: httpx.AsyncClient | None = None, timeout: float = 10.0) -> None:
        """Create a notifier.

        Args:
            url: Webhook URL receiving one JSON event per request.
            client: Optional injected httpx client for testing / transport control.
            timeout: Per-request timeout in seconds.
        """
        self._url = url
        self._client = client
        self._timeout = timeout

    async def publish(self, event: LifecycleEvent) -> None:
        payload = event.model_dump(mode='json')
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload, timeout=self._timeout)
                resp.raise_for_status()
                return

            async with httpx.AsyncClient() as client:
                resp = await client.post(self._url, json=payload, timeout=self._timeout)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            log_event(
                'notifier.delivery_failed',
                trace_id=event.request_id,
                event_type=event.type,
                error=str(exc),
            )
