"""Thread-based cron trigger scheduler.

A generic registry of ``job_id -> (cron expression, callback)``. One daemon
thread evaluates due entries; every due callback runs on its own thread so a
slow job never delays the others. Entries are single-flight: a fire that comes
due while the previous invocation of the same job is still running is dropped,
never queued.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set
from zoneinfo import ZoneInfo

from .cron import next_fire_after, next_fire_times, normalize_cron
from .errors import DuplicateJobError, SchedulerError

logger = logging.getLogger(__name__)

UTC = timezone.utc
MAX_SLEEP_SECONDS = 60.0
DEFAULT_GRACE_SECONDS = 10.0

Callback = Callable[[], Any]


@dataclass(frozen=True)
class Registration:
    handle: int
    job_id: str
    name: str
    cron_expr: str
    payload: Any
    next_fire: datetime


@dataclass
class _Entry:
    handle: int
    job_id: str
    name: str
    cron_expr: str
    callback: Callback
    payload: Any
    next_fire: datetime
    inflight: Optional[threading.Thread] = None

    def snapshot(self) -> Registration:
        return Registration(
            handle=self.handle,
            job_id=self.job_id,
            name=self.name,
            cron_expr=self.cron_expr,
            payload=self.payload,
            next_fire=self.next_fire,
        )


class TriggerScheduler:
    def __init__(
        self,
        tz: ZoneInfo = ZoneInfo("UTC"),
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.tz = tz
        self.grace_seconds = grace_seconds
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._entries: Dict[int, _Entry] = {}
        self._by_job: Dict[str, int] = {}
        self._handles = itertools.count(1)
        self._inflight: Set[threading.Thread] = set()
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    def _validate(self, cron_expr: str) -> str:
        try:
            return normalize_cron(cron_expr)
        except ValueError as exc:
            raise SchedulerError(f"Cannot schedule: {exc}") from exc

    def _next_fire(self, cron_expr: str, after: datetime) -> datetime:
        try:
            return next_fire_after(cron_expr, after, self.tz)
        except ValueError as exc:
            raise SchedulerError(f"Cannot schedule: {exc}") from exc

    def add(
        self,
        job_id: str,
        cron_expr: str,
        callback: Callback,
        name: Optional[str] = None,
        payload: Any = None,
    ) -> int:
        expr = self._validate(cron_expr)
        with self._lock:
            if job_id in self._by_job:
                raise DuplicateJobError(job_id)
            next_fire = self._next_fire(expr, self._clock())
            handle = next(self._handles)
            self._entries[handle] = _Entry(
                handle=handle,
                job_id=job_id,
                name=name or job_id,
                cron_expr=expr,
                callback=callback,
                payload=payload,
                next_fire=next_fire,
            )
            self._by_job[job_id] = handle
            self._wakeup.set()
        logger.debug("Added entry %s for %s (%s)", handle, name or job_id, expr)
        return handle

    def remove(self, handle: int) -> bool:
        with self._lock:
            entry = self._entries.pop(handle, None)
            if entry is None:
                return False
            if self._by_job.get(entry.job_id) == handle:
                del self._by_job[entry.job_id]
            self._wakeup.set()
        logger.debug("Removed entry %s for %s", handle, entry.name)
        return True

    def replace(
        self,
        handle: int,
        cron_expr: str,
        callback: Optional[Callback] = None,
        payload: Any = None,
    ) -> int:
        expr = self._validate(cron_expr)
        with self._lock:
            old = self._entries.get(handle)
            if old is None:
                raise SchedulerError(f"Unknown scheduler entry: {handle}")
            next_fire = self._next_fire(expr, self._clock())
            new_handle = next(self._handles)
            del self._entries[handle]
            self._entries[new_handle] = _Entry(
                handle=new_handle,
                job_id=old.job_id,
                name=old.name,
                cron_expr=expr,
                callback=callback or old.callback,
                payload=old.payload if payload is None else payload,
                next_fire=next_fire,
                inflight=old.inflight,
            )
            self._by_job[old.job_id] = new_handle
            self._wakeup.set()
        logger.debug("Replaced entry %s with %s for %s (%s)", handle, new_handle, old.name, expr)
        return new_handle

    def get(self, job_id: str) -> Optional[Registration]:
        with self._lock:
            handle = self._by_job.get(job_id)
            if handle is None:
                return None
            return self._entries[handle].snapshot()

    def entries(self) -> List[Registration]:
        with self._lock:
            return [entry.snapshot() for entry in self._entries.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def next_fire_times(self, cron_expr: str, count: int, after: Optional[datetime] = None) -> List[datetime]:
        expr = self._validate(cron_expr)
        try:
            return next_fire_times(expr, count, self.tz, after=after or self._clock())
        except ValueError as exc:
            raise SchedulerError(f"Cannot preview: {exc}") from exc

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self._stopping:
                raise SchedulerError("Scheduler has been stopped and cannot be restarted")
            if self._thread is not None:
                logger.warning("Trigger scheduler already started")
                return
            now = self._clock()
            for entry in list(self._entries.values()):
                self._advance(entry, now)
            self._thread = threading.Thread(target=self._run, daemon=True, name="swarmcron-scheduler")
            self._thread.start()
        logger.info("Trigger scheduler started with %s entries (tz=%s)", len(self), self.tz.key)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop dispatching and wait for in-flight callbacks.

        No callback starts once this is called. In-flight callbacks get up to
        ``timeout`` (default: the grace period) seconds to return.
        """
        with self._lock:
            already_stopping = self._stopping
            self._stopping = True
            self._wakeup.set()
            thread = self._thread
        if already_stopping and thread is None:
            return
        if thread is not None:
            thread.join()
            self._thread = None

        grace = self.grace_seconds if timeout is None else timeout
        deadline = time.monotonic() + grace
        with self._lock:
            inflight = list(self._inflight)
        for worker in inflight:
            worker.join(max(0.0, deadline - time.monotonic()))
        still_running = [worker.name for worker in inflight if worker.is_alive()]
        if still_running:
            logger.warning(
                "Trigger scheduler stopped with %s callback(s) still running after %.1fs: %s",
                len(still_running),
                grace,
                ", ".join(still_running),
            )
        logger.info("Trigger scheduler stopped")

    def run_pending(self, now: Optional[datetime] = None) -> float:
        """Dispatch every due entry and return seconds until the next one."""
        with self._lock:
            now = now or self._clock()
            for entry in list(self._entries.values()):
                if entry.next_fire <= now:
                    self._dispatch(entry, entry.next_fire)
                    self._advance(entry, now)
            if not self._entries:
                return MAX_SLEEP_SECONDS
            earliest = min(entry.next_fire for entry in self._entries.values())
            return min(MAX_SLEEP_SECONDS, max(0.0, (earliest - now).total_seconds()))

    def _advance(self, entry: _Entry, now: datetime) -> None:
        """Move ``entry`` to its next fire; drop it when it has none."""
        try:
            entry.next_fire = self._next_fire(entry.cron_expr, now)
        except SchedulerError as exc:
            logger.error("Removing entry %s for %s: %s", entry.handle, entry.name, exc)
            self._entries.pop(entry.handle, None)
            if self._by_job.get(entry.job_id) == entry.handle:
                del self._by_job[entry.job_id]

    def _run(self) -> None:
        while True:
            with self._lock:
                if self._stopping:
                    break
                self._wakeup.clear()
                delay = self.run_pending()
            self._wakeup.wait(delay)

    def _dispatch(self, entry: _Entry, scheduled_for: datetime) -> None:
        if self._stopping:
            return
        if entry.inflight is not None and entry.inflight.is_alive():
            logger.warning(
                "Dropping fire of %s scheduled for %s; previous invocation still running",
                entry.name,
                scheduled_for.isoformat(),
            )
            return
        worker = threading.Thread(
            target=self._invoke,
            args=(entry.callback, entry.name, scheduled_for),
            daemon=True,
            name=f"swarmcron-job-{entry.name}",
        )
        entry.inflight = worker
        self._inflight.add(worker)
        worker.start()

    def _invoke(self, callback: Callback, name: str, scheduled_for: datetime) -> None:
        logger.debug("Firing %s (scheduled_for=%s)", name, scheduled_for.isoformat())
        try:
            callback()
        except Exception:
            logger.exception("Callback for %s raised", name)
        finally:
            with self._lock:
                self._inflight.discard(threading.current_thread())
