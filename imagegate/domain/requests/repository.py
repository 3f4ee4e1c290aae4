# ============================================================
# Request store
# ============================================================
from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from imagegate.core.errors import InvalidStateError, NotFoundError

from .entities import (
    ImageRequest,
    NewImageRequest,
    RequestStatus,
    can_transition,
    check_changes,
    utcnow,
)
from .models import ImageRequestRow


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def _allowed_sources(
        expected: RequestStatus | Iterable[RequestStatus],
        target: RequestStatus,
) -> frozenset[RequestStatus]:
    """Expected statuses from which the transition table permits `target`."""
    if isinstance(expected, RequestStatus):
        expected = (expected,)
    target = RequestStatus(target)
    return frozenset(
        RequestStatus(s) for s in expected
        if can_transition(RequestStatus(s), target)
    )


def _normalize(changes: dict[str, Any]) -> dict[str, Any]:
    check_changes(changes)
    if "status" in changes:
        changes = {**changes, "status": RequestStatus(changes["status"])}
    return changes


class RequestStore(Protocol):
    def create(self, data: NewImageRequest) -> ImageRequest:
        """Create a pending request"""
        ...

    def get(self, request_id: str) -> ImageRequest:
        """Get a request by id, raises NotFoundError"""
        ...

    def update(self, request_id: str, **changes: Any) -> ImageRequest:
        """Merge fields into a request and refresh updated_at"""
        ...

    def transition(
            self,
            request_id: str,
            expected: RequestStatus | Iterable[RequestStatus],
            status: RequestStatus,
            **changes: Any,
    ) -> ImageRequest:
        """Atomically move a request to `status` if it is currently in `expected`"""
        ...

    def list_all(self) -> list[ImageRequest]:
        ...

    def list_by_user(self, user_id: str) -> list[ImageRequest]:
        ...

    def list_by_status(self, status: RequestStatus) -> list[ImageRequest]:
        ...

    def delete(self, request_id: str) -> bool:
        ...


class InMemoryRequestStore(RequestStore):
    """
    Process-local store.

    All access goes through one re-entrant lock so a check-and-set in
    `transition` cannot interleave with another writer, whether callers are
    coroutines on one loop or threads.
    """

    def __init__(self) -> None:
        self._requests: dict[str, ImageRequest] = {}
        self._lock = threading.RLock()

    def create(self, data: NewImageRequest) -> ImageRequest:
        now = utcnow()
        with self._lock:
            request_id = new_request_id()
            while request_id in self._requests:
                request_id = new_request_id()
            request = ImageRequest(
                id=request_id,
                status=RequestStatus.PENDING,
                image_name=data.image_name,
                request_name=data.request_name,
                base_image=data.base_image,
                packages=tuple(data.packages),
                description=data.description,
                justification=data.justification,
                requester_id=data.requester_id,
                created_at=now,
                updated_at=now,
            )
            self._requests[request_id] = request
            return replace(request)

    def get(self, request_id: str) -> ImageRequest:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NotFoundError(request_id)
            return replace(request)

    def update(self, request_id: str, **changes: Any) -> ImageRequest:
        changes = _normalize(changes)
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                raise NotFoundError(request_id)
            updated = replace(request, **changes, updated_at=utcnow())
            self._requests[request_id] = updated
            return replace(updated)

    def transition(
            self,
            request_id: str,
            expected: RequestStatus | Iterable[RequestStatus],
            status: RequestStatus,
            **changes: Any,
    ) -> ImageRequest:
        allowed = _allowed_sources(expected, status)
        with self._lock:
            current = self.get(request_id)
            if current.status not in allowed:
                raise InvalidStateError(request_id, current.status.value, RequestStatus(status).value)
            return self.update(request_id, status=status, **changes)

    def list_all(self) -> list[ImageRequest]:
        with self._lock:
            return [replace(r) for r in self._requests.values()]

    def list_by_user(self, user_id: str) -> list[ImageRequest]:
        return [r for r in self.list_all() if r.requester_id == user_id]

    def list_by_status(self, status: RequestStatus) -> list[ImageRequest]:
        status = RequestStatus(status)
        return [r for r in self.list_all() if r.status == status]

    def delete(self, request_id: str) -> bool:
        with self._lock:
            return self._requests.pop(request_id, None) is not None


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops the offset; every stored timestamp is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


_DATETIME_FIELDS = frozenset(
    f.name for f in fields(ImageRequest)
    if f.name.endswith("_at")
)


def _to_entity(row: ImageRequestRow) -> ImageRequest:
    values: dict[str, Any] = {}
    for f in fields(ImageRequest):
        value = getattr(row, f.name)
        if f.name in _DATETIME_FIELDS:
            value = _as_utc(value)
        values[f.name] = value
    values["status"] = RequestStatus(values["status"])
    values["packages"] = tuple(values["packages"] or ())
    return ImageRequest(**values)


def _to_columns(changes: dict[str, Any]) -> dict[str, Any]:
    columns = dict(changes)
    if "status" in columns:
        columns["status"] = RequestStatus(columns["status"]).value
    return columns


class SqlRequestStore(RequestStore):
    """Request store backed by the `image_requests` table.

    Statements are serialized through one lock: SQLite shares a single
    connection between threads.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory
        self._lock = threading.RLock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock, self._session_factory() as db:
            yield db

    def create(self, data: NewImageRequest) -> ImageRequest:
        now = utcnow()
        row = ImageRequestRow(
            id=new_request_id(),
            status=RequestStatus.PENDING.value,
            image_name=data.image_name,
            request_name=data.request_name,
            base_image=data.base_image,
            packages=list(data.packages),
            description=data.description,
            justification=data.justification,
            requester_id=data.requester_id,
            created_at=now,
            updated_at=now,
        )
        with self._session() as db:
            db.add(row)
            db.commit()
            return _to_entity(row)

    def get(self, request_id: str) -> ImageRequest:
        with self._session() as db:
            row = db.get(ImageRequestRow, request_id)
            if row is None:
                raise NotFoundError(request_id)
            return _to_entity(row)

    def update(self, request_id: str, **changes: Any) -> ImageRequest:
        changes = _normalize(changes)
        query = (
            update(ImageRequestRow)
            .where(ImageRequestRow.id == request_id)
            .values(**_to_columns(changes), updated_at=utcnow())
        )
        with self._session() as db:
            matched = db.execute(query).rowcount
            db.commit()
        if matched == 0:
            raise NotFoundError(request_id)
        return self.get(request_id)

    def transition(
            self,
            request_id: str,
            expected: RequestStatus | Iterable[RequestStatus],
            status: RequestStatus,
            **changes: Any,
    ) -> ImageRequest:
        allowed = _allowed_sources(expected, status)
        changes = _normalize({**changes, "status": status})
        # Single conditional UPDATE: the status re-check and the write commit together.
        query = (
            update(ImageRequestRow)
            .where(ImageRequestRow.id == request_id)
            .where(ImageRequestRow.status.in_([s.value for s in allowed]))
            .values(**_to_columns(changes), updated_at=utcnow())
        )
        with self._session() as db:
            matched = db.execute(query).rowcount
            db.commit()
        if matched == 0:
            current = self.get(request_id)
            raise InvalidStateError(request_id, current.status.value, changes["status"].value)
        return self.get(request_id)

    def _select(self, *conditions) -> list[ImageRequest]:
        query = select(ImageRequestRow).order_by(ImageRequestRow.created_at)
        if conditions:
            query = query.where(*conditions)
        with self._session() as db:
            return [_to_entity(row) for row in db.scalars(query)]

    def list_all(self) -> list[ImageRequest]:
        return self._select()

    def list_by_user(self, user_id: str) -> list[ImageRequest]:
        return self._select(ImageRequestRow.requester_id == user_id)

    def list_by_status(self, status: RequestStatus) -> list[ImageRequest]:
        return self._select(ImageRequestRow.status == RequestStatus(status).value)

    def delete(self, request_id: str) -> bool:
        with self._session() as db:
            row = db.get(ImageRequestRow, request_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True
