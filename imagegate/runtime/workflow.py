"""Approval workflow: the request lifecycle from submission to a built image.

    pending ──approve──> approved ─> checking ─┬─> existing_image_found
       │                                       ├─> failed (unexpected error while scanning)
       │                                       └─> building ─┬─> completed ──monitor──> build_complete
       └──reject───> rejected                                ├─> no_changes
                                                             └─> failed

Every step is persisted before the next one starts, and every transition is
published as a LifecycleEvent. The first transition out of `pending` is a
compare-and-set in the store, so of two concurrent decisions on the same
request exactly one wins and the other sees InvalidStateError.
"""

from __future__ import annotations

from typing import Any, Iterable, Protocol

from imagegate.core.errors import ExternalToolError, NotAuthorizedError
from imagegate.domain.requests.entities import (
    MAX_TOOL_OUTPUT_CHARS,
    ImageRequest,
    NewImageRequest,
    RequestStatus,
    utcnow,
)
from imagegate.domain.requests.repository import RequestStore
from imagegate.observability.tracing import log_event
from imagegate.tools.chainctl import AssemblyResult, BuildRecord

from .build_monitor import BuildMonitor
from .events import EventSink, LifecycleEvent, NoopEventSink
from .matcher import ImageMatcher, select_match


class AssemblyGateway(Protocol):
    async def create_assembly(self, request: ImageRequest) -> AssemblyResult: ...

    def image_url(self, repo_name: str) -> str: ...


class ApprovalWorkflow:
    """Coordinates store, matcher, gateway, monitor and event sink."""

    def __init__(
        self,
        *,
        store: RequestStore,
        gateway: AssemblyGateway,
        matcher: ImageMatcher,
        monitor: BuildMonitor,
        events: EventSink | None = None,
        approver_ids: Iterable[str] = (),
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._matcher = matcher
        self._monitor = monitor
        self._events = events or NoopEventSink()
        self._approver_ids = frozenset(approver_ids)

    @property
    def store(self) -> RequestStore:
        return self._store

    async def submit(self, data: NewImageRequest) -> ImageRequest:
        request = self._store.create(data)
        log_event(
            'workflow.submitted',
            trace_id=request.id,
            requester=request.requester_id,
            base_repo=request.image_name,
            packages=list(request.packages),
        )
        await self._emit('request.submitted', request, approvers=sorted(self._approver_ids))
        return request

    async def reject(self, request_id: str, approver_id: str, reason: str) -> ImageRequest:
        self._store.get(request_id)
        self._assert_approver(approver_id)

        request = self._store.transition(
            request_id,
            RequestStatus.PENDING,
            RequestStatus.REJECTED,
            rejected_by=approver_id,
            rejection_reason=reason,
            rejected_at=utcnow(),
        )
        log_event('workflow.rejected', trace_id=request_id, rejected_by=approver_id, reason=reason)
        await self._emit('request.rejected', request, reason=reason)
        return request

    async def approve(self, request_id: str, approver_id: str) -> ImageRequest:
        """Approve a pending request and drive it to its next resting state.

        Anything that goes wrong after approval leaves the request `failed`
        rather than stuck in `checking` or `building`.

        Raises:
            NotFoundError: Unknown request id.
            NotAuthorizedError: `approver_id` is not a configured approver.
            InvalidStateError: The request is no longer pending.
        """
        self._store.get(request_id)
        self._assert_approver(approver_id)

        request = self._store.transition(
            request_id,
            RequestStatus.PENDING,
            RequestStatus.APPROVED,
            approver_id=approver_id,
            approved_at=utcnow(),
        )
        log_event('workflow.approved', trace_id=request_id, approved_by=approver_id)
        await self._emit('request.approved', request)

        request = await self._advance(request, RequestStatus.CHECKING)
        try:
            request = await self._check_and_build(request)
        except Exception as exc:  # noqa: BLE001
            return await self._fail(request_id, exc)

        if request.status == RequestStatus.COMPLETED:
            self._monitor.start_monitoring(request_id, request.custom_name, self.on_build_complete)
            request = self._store.get(request_id)

        return request

    async def _check_and_build(self, request: ImageRequest) -> ImageRequest:
        # -------------------------
        # DUPLICATE CHECK
        # -------------------------
        matches = await self._matcher.find_matches(
            request.image_name,
            request.packages,
            trace_id=request.id,
        )
        match = select_match(matches)
        if match is not None:
            return await self._advance(
                request,
                RequestStatus.EXISTING_IMAGE_FOUND,
                event_data={
                    'packages': sorted(match.packages),
                    'exact_match': match.exact_match,
                },
                existing_image=match.repo_name,
                image_url=self._gateway.image_url(match.repo_name),
            )

        # -------------------------
        # BUILD
        # -------------------------
        request = await self._advance(request, RequestStatus.BUILDING)

        try:
            result = await self._gateway.create_assembly(request)
        except (ExternalToolError, ValueError) as exc:
            return await self._fail(request.id, exc)

        status = RequestStatus.COMPLETED if result.created else RequestStatus.NO_CHANGES
        return await self._advance(
            request,
            status,
            event_data={'no_change': result.no_change},
            assembly_id=result.assembly_id,
            custom_name=result.custom_name,
            image_url=result.image_url,
            completed_at=utcnow(),
            chainctl_output=result.raw_output[:MAX_TOOL_OUTPUT_CHARS],
        )

    async def on_build_complete(self, request: ImageRequest, build: BuildRecord) -> None:
        """Completion handler registered with the build monitor."""
        log_event('workflow.build_complete', trace_id=request.id, repo=build.repo_name)
        await self._emit(
            'request.build_complete',
            request,
            repo=build.repo_name,
            completion_time=build.completion_time.isoformat() if build.completion_time else None,
        )

    def resume_monitoring(self) -> int:
        return self._monitor.resume(self.on_build_complete)

    # ------------------------------
    # Helpers
    # ------------------------------

    async def _advance(
        self,
        request: ImageRequest,
        status: RequestStatus,
        *,
        event_data: dict[str, Any] | None = None,
        **changes: Any,
    ) -> ImageRequest:
        updated = self._store.transition(request.id, request.status, status, **changes)
        log_event(
            'workflow.transition',
            trace_id=request.id,
            from_status=request.status.value,
            to_status=status.value,
        )
        await self._emit(f'request.{status.value}', updated, **(event_data or {}))
        return updated

    async def _fail(self, request_id: str, exc: Exception) -> ImageRequest:
        current = self._store.get(request_id)
        details = getattr(exc, 'raw_stderr', '') or None
        log_event(
            'workflow.build.failed',
            trace_id=request_id,
            stage=current.status.value,
            error=repr(exc),
            stderr=details,
        )
        return await self._advance(
            current,
            RequestStatus.FAILED,
            event_data={'stderr': details},
            error=str(exc) or type(exc).__name__,
        )

    def _assert_approver(self, user_id: str) -> None:
        if self._approver_ids and user_id not in self._approver_ids:
            raise NotAuthorizedError(user_id)

    async def _emit(self, event_type: str, request: ImageRequest, **data: Any) -> None:
        event = LifecycleEvent.for_request(event_type, request, **data)
        try:
            await self._events.publish(event)
        except Exception as exc:  # noqa: BLE001
            log_event('workflow.event.failed', trace_id=request.id, event_type=event_type, error=repr(exc))
