"""Single in-process timer table.

Each entry is `{next_fire_time, interval (None = once), cancelled}` and is
filed under a key (the request id for build monitoring). Cancelling a key
drops every entry under it; doing so twice, or from inside one of the key's
own callbacks, is harmless.

The background loop is optional: tests drive `run_pending()` with a fake
clock instead.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from imagegate.observability.tracing import log_event

Callback = Callable[[], Awaitable[None]]

# Upper bound on how long the loop sleeps without re-checking the table.
_MAX_IDLE_SECONDS = 60.0


@dataclass(order=True)
class ScheduledEntry:
    next_fire_time: float
    seq: int
    key: str = field(compare=False)
    callback: Callback = field(compare=False, repr=False)
    interval: float | None = field(default=None, compare=False)
    cancelled: bool = field(default=False, compare=False)


class Scheduler:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._heap: list[ScheduledEntry] = []
        self._by_key: dict[str, list[ScheduledEntry]] = {}
        self._seq = itertools.count()
        self._lock = threading.RLock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wakeup: asyncio.Event | None = None
        self._runner: asyncio.Task | None = None

    def schedule(
        self,
        key: str,
        delay: float,
        callback: Callback,
        *,
        interval: float | None = None,
    ) -> ScheduledEntry:
        """Fire `callback` after `delay` seconds, then every `interval` seconds if given."""
        if interval is not None and interval <= 0:
            raise ValueError('interval must be positive')
        entry = ScheduledEntry(
            next_fire_time=self._clock() + max(delay, 0.0),
            seq=next(self._seq),
            key=key,
            callback=callback,
            interval=interval,
        )
        with self._lock:
            heapq.heappush(self._heap, entry)
            self._by_key.setdefault(key, []).append(entry)
        self._notify()
        return entry

    def cancel(self, key: str) -> int:
        """Cancel every entry filed under `key`; returns how many were live."""
        with self._lock:
            entries = self._by_key.pop(key, [])
            for entry in entries:
                entry.cancelled = True
            if entries:
                self._compact()
        return len(entries)

    def cancel_all(self) -> None:
        with self._lock:
            for entries in self._by_key.values():
                for entry in entries:
                    entry.cancelled = True
            self._by_key.clear()
            self._heap.clear()

    def _compact(self) -> None:
        # Rebuild once cancelled entries make up half of the heap.
        stale = sum(1 for entry in self._heap if entry.cancelled)
        if stale and stale * 2 >= len(self._heap):
            self._heap = [entry for entry in self._heap if not entry.cancelled]
            heapq.heapify(self._heap)

    def has(self, key: str) -> bool:
        with self._lock:
            return bool(self._by_key.get(key))

    def entries(self, key: str) -> list[ScheduledEntry]:
        with self._lock:
            return list(self._by_key.get(key, []))

    def next_fire_time(self) -> float | None:
        with self._lock:
            while self._heap and self._heap[0].cancelled:
                heapq.heappop(self._heap)
            return self._heap[0].next_fire_time if self._heap else None

    async def run_pending(self) -> int:
        """Run every entry that is due now. Returns the number of callbacks run."""
        now = self._clock()
        due: list[ScheduledEntry] = []
        with self._lock:
            while self._heap and self._heap[0].next_fire_time <= now:
                entry = heapq.heappop(self._heap)
                if not entry.cancelled:
                    due.append(entry)

        ran = 0
        for entry in due:
            # An earlier callback in this batch may have cancelled the key.
            if entry.cancelled:
                continue
            ran += 1
            try:
                await entry.callback()
            except Exception as exc:  # noqa: BLE001
                log_event('scheduler.callback.failed', trace_id=entry.key, error=repr(exc))
            self._after_fire(entry, now)
        return ran

    def _after_fire(self, entry: ScheduledEntry, now: float) -> None:
        with self._lock:
            if entry.cancelled:
                return
            if entry.interval is None:
                siblings = self._by_key.get(entry.key, [])
                if entry in siblings:
                    siblings.remove(entry)
                if not siblings:
                    self._by_key.pop(entry.key, None)
                return
            entry.next_fire_time = max(entry.next_fire_time + entry.interval, now)
            entry.seq = next(self._seq)
            heapq.heappush(self._heap, entry)

    # ------------------------------
    # Background loop
    # ------------------------------

    async def start(self) -> None:
        if self._runner is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._runner = asyncio.create_task(self._run_forever())

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass
        self._loop = None
        self._wakeup = None

    async def _run_forever(self) -> None:
        while True:
            await self.run_pending()
            next_fire = self.next_fire_time()
            timeout = _MAX_IDLE_SECONDS
            if next_fire is not None:
                timeout = min(max(next_fire - self._clock(), 0.0), _MAX_IDLE_SECONDS)
            wakeup = self._wakeup
            if wakeup is None:
                return
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass
            wakeup.clear()

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(wakeup.set)
