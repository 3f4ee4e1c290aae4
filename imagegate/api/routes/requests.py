from fastapi import APIRouter, Depends, HTTPException

from imagegate.api.core.container import get_container
from imagegate.api.schemas import (
    ApproveBody,
    ImageRequestOut,
    RejectBody,
    RequestFilters,
    SubmitImageRequest,
)
from imagegate.core.errors import InvalidStateError, NotAuthorizedError, NotFoundError
from imagegate.domain.requests.entities import NewImageRequest

router = APIRouter(prefix="/requests", tags=["Requests"])


def _decision_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, NotAuthorizedError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=409, detail=str(exc))


@router.post("", status_code=201, response_model=ImageRequestOut)
async def submit_request(
    body: SubmitImageRequest,
    container=Depends(get_container),
):
    """Submit a new image request; approvers are notified through lifecycle events."""
    data = NewImageRequest.from_submission(
        request_name=body.request_name,
        base_repo=body.base_repo,
        registry=container.settings.chainguard_registry,
        packages=body.packages,
        description=body.description,
        justification=body.justification,
        requester_id=body.requester_id,
    )
    return await container.workflow.submit(data)


@router.get(
    "",
    summary="List image requests",
    description="Returns requests filtered by requester and status.",
    response_model=list[ImageRequestOut],
)
async def list_requests(
    q: RequestFilters = Depends(),
    container=Depends(get_container),
):
    store = container.store
    if q.requester_id:
        requests = store.list_by_user(q.requester_id)
        if q.status:
            requests = [r for r in requests if r.status == q.status]
    elif q.status:
        requests = store.list_by_status(q.status)
    else:
        requests = store.list_all()
    return requests


@router.get("/{request_id}", response_model=ImageRequestOut)
async def get_request(
    request_id: str,
    container=Depends(get_container),
):
    """Get a specific request."""
    try:
        return container.store.get(request_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/{request_id}/approve", response_model=ImageRequestOut)
async def approve_request(
    request_id: str,
    body: ApproveBody,
    container=Depends(get_container),
):
    try:
        return await container.workflow.approve(request_id, body.approver_id)
    except (NotFoundError, NotAuthorizedError, InvalidStateError) as exc:
        raise _decision_error(exc)


@router.post("/{request_id}/reject", response_model=ImageRequestOut)
async def reject_request(
    request_id: str,
    body: RejectBody,
    container=Depends(get_container),
):
    try:
        return await container.workflow.reject(request_id, body.approver_id, body.reason)
    except (NotFoundError, NotAuthorizedError, InvalidStateError) as exc:
        raise _decision_error(exc)
