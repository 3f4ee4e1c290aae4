"""Build-completion monitor.

After chainctl saves a new custom repository the image itself is built later,
on the registry's schedule. The monitor polls that repository's build history
until a successful build finishes after monitoring started, then marks the
request `build_complete` and fires the task's completion handler once.

Timing per task (relative to the monitoring start):
- one early check at 2 minutes
- a recurring check every 5 minutes
- an absolute stop at 24 hours
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Awaitable, Callable, Protocol

from imagegate.core.errors import InvalidStateError, NotFoundError
from imagegate.domain.requests.entities import ImageRequest, RequestStatus, utcnow
from imagegate.domain.requests.repository import RequestStore
from imagegate.observability.tracing import log_event
from imagegate.runtime.scheduler import Scheduler
from imagegate.tools.chainctl import BuildRecord, BuildResult

EARLY_CHECK_DELAY = timedelta(minutes=2)
POLL_INTERVAL = timedelta(minutes=5)
MONITORING_WINDOW = timedelta(hours=24)

CompletionHandler = Callable[[ImageRequest, BuildRecord], Awaitable[None]]


class BuildSource(Protocol):
    async def list_build_records(self, repo_name: str) -> list[BuildRecord]: ...


@dataclass
class MonitorTask:
    request_id: str
    repo_name: str
    monitoring_start_time: datetime
    handler: CompletionHandler
    fired: bool = False


def qualifying_builds(records: list[BuildRecord], since: datetime) -> list[BuildRecord]:
    """Successful builds finished after `since`, latest first."""
    fresh = [
        r for r in records
        if r.completion_time is not None
        and r.completion_time > since
        and r.result == BuildResult.SUCCESS
    ]
    return sorted(fresh, key=lambda r: r.completion_time, reverse=True)


class BuildMonitor:
    def __init__(
        self,
        *,
        gateway: BuildSource,
        store: RequestStore,
        scheduler: Scheduler,
        now: Callable[[], datetime] = utcnow,
        early_check_delay: timedelta = EARLY_CHECK_DELAY,
        poll_interval: timedelta = POLL_INTERVAL,
        window: timedelta = MONITORING_WINDOW,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._scheduler = scheduler
        self._now = now
        self._early_check_delay = early_check_delay
        self._poll_interval = poll_interval
        self._window = window
        self._tasks: dict[str, MonitorTask] = {}
        self._lock = threading.RLock()

    @property
    def active_request_ids(self) -> set[str]:
        with self._lock:
            return set(self._tasks)

    def get_task(self, request_id: str) -> MonitorTask | None:
        with self._lock:
            return self._tasks.get(request_id)

    def start_monitoring(
        self,
        request_id: str,
        repo_name: str,
        handler: CompletionHandler,
        *,
        started_at: datetime | None = None,
    ) -> MonitorTask | None:
        """Install the monitoring task for a request, replacing any existing one.

        `started_at` resumes a task whose start time was persisted earlier;
        a task already past its 24 hour window is not installed.
        """
        self.stop_monitoring(request_id)

        now = self._now()
        start = started_at or now
        elapsed = (now - start).total_seconds()
        remaining = self._window.total_seconds() - elapsed
        if remaining <= 0:
            log_event('monitor.window_elapsed', trace_id=request_id, repo=repo_name)
            return None

        task = MonitorTask(
            request_id=request_id,
            repo_name=repo_name,
            monitoring_start_time=start,
            handler=handler,
        )
        with self._lock:
            self._tasks[request_id] = task

        tick = partial(self._tick, request_id)
        early = max(self._early_check_delay.total_seconds() - elapsed, 0.0)
        interval = self._poll_interval.total_seconds()
        self._scheduler.schedule(request_id, early, tick)
        self._scheduler.schedule(request_id, interval, tick, interval=interval)
        self._scheduler.schedule(request_id, remaining, partial(self._expire, request_id))

        if started_at is None:
            try:
                self._store.update(
                    request_id,
                    monitored_repo=repo_name,
                    monitoring_started_at=start,
                )
            except NotFoundError:
                # First tick notices the request is gone and cancels.
                pass

        log_event(
            'monitor.started',
            trace_id=request_id,
            repo=repo_name,
            monitoring_start_time=start.isoformat(),
            resumed=started_at is not None,
        )
        return task

    async def check_for_new_builds(self, request_id: str) -> BuildRecord | None:
        """Poll once; returns the build that completed the request, if any."""
        task = self.get_task(request_id)
        if task is None or task.fired:
            return None

        try:
            request = self._store.get(request_id)
        except NotFoundError:
            self.stop_monitoring(request_id)
            return None
        if request.status == RequestStatus.BUILD_COMPLETE:
            self.stop_monitoring(request_id)
            return None

        records = await self._gateway.list_build_records(task.repo_name)
        fresh = qualifying_builds(records, task.monitoring_start_time)
        if not fresh:
            log_event('monitor.no_new_builds', trace_id=request_id, repo=task.repo_name, seen=len(records))
            return None

        with self._lock:
            # A concurrent tick may have won while we were waiting on chainctl.
            if task.fired or self._tasks.get(request_id) is not task:
                return None
            task.fired = True
        self.stop_monitoring(request_id)

        build = fresh[0]
        try:
            completed = self._store.transition(
                request_id,
                RequestStatus.COMPLETED,
                RequestStatus.BUILD_COMPLETE,
                build_completed_at=build.completion_time,
            )
        except (NotFoundError, InvalidStateError) as exc:
            log_event('monitor.transition_failed', trace_id=request_id, error=str(exc))
            return None

        log_event(
            'monitor.build_complete',
            trace_id=request_id,
            repo=task.repo_name,
            completion_time=build.completion_time.isoformat(),
        )
        await task.handler(completed, build)
        return build

    def stop_monitoring(self, request_id: str) -> bool:
        with self._lock:
            task = self._tasks.pop(request_id, None)
        self._scheduler.cancel(request_id)
        if task is not None:
            log_event('monitor.stopped', trace_id=request_id, repo=task.repo_name)
        return task is not None

    def stop_all(self) -> None:
        for request_id in self.active_request_ids:
            self.stop_monitoring(request_id)

    def resume(self, handler: CompletionHandler) -> int:
        """Re-arm monitoring for created images whose window is still open."""
        resumed = 0
        for request in self._store.list_by_status(RequestStatus.COMPLETED):
            if not request.monitored_repo or request.monitoring_started_at is None:
                continue
            task = self.start_monitoring(
                request.id,
                request.monitored_repo,
                handler,
                started_at=request.monitoring_started_at,
            )
            if task is not None:
                resumed += 1
        return resumed

    async def _tick(self, request_id: str) -> None:
        try:
            await self.check_for_new_builds(request_id)
        except Exception as exc:  # noqa: BLE001
            log_event('monitor.tick.failed', trace_id=request_id, error=repr(exc))

    async def _expire(self, request_id: str) -> None:
        if self.stop_monitoring(request_id):
            log_event('monitor.expired', trace_id=request_id)
