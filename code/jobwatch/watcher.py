"""In-process watcher for long-running backend jobs.

Features kick off a server-side computation (summary generation, report
export, clustering ...) and hand the watcher a key plus an async status check.
The watcher polls every active job on a shared interval, enforces a per-job
timeout, suppresses duplicate registrations, and fans progress / terminal
events out to subscribers.

The polling loop is a single asyncio task that exists only while at least one
job is active: it is created by the first ``register`` and exits as soon as the
active set drains.
"""
from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from jobwatch.config import settings
from jobwatch.models import JobProgress, JobStatus, PollOutcome, PollResult, WatchedJob

log = structlog.get_logger(__name__)

PollFn = Callable[[], Awaitable[Any]]
Handler = Callable[[WatchedJob], None]


class JobNotReady(Exception):
    """Raised by a status check when the job result is not available yet."""


@dataclass
class JobHandlers:
    on_progress: Optional[Handler] = None
    on_completed: Optional[Handler] = None
    on_failed: Optional[Handler] = None
    on_timeout: Optional[Handler] = None


_TERMINAL_HANDLER = {
    JobStatus.COMPLETED: "on_completed",
    JobStatus.FAILED: "on_failed",
    JobStatus.TIMED_OUT: "on_timeout",
}


@dataclass
class _ActiveJob:
    job: WatchedJob
    poll_fn: PollFn
    poll_task: Optional[asyncio.Task] = None


def _positive_ms(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _snapshot(job: WatchedJob) -> WatchedJob:
    try:
        return job.model_copy(deep=True)
    except Exception:  # noqa: BLE001
        # results holding locks, sockets and the like cannot be deep-copied
        return job.model_copy()


def _coerce(value: Any) -> PollResult:
    if isinstance(value, PollResult):
        return value
    if value is None:
        return PollResult.pending()
    return PollResult.completed(value)


class JobWatcher:
    """Owns the active-job set and the shared polling loop."""

    def __init__(
        self,
        interval_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_ms = int(interval_ms or settings.JOB_POLL_INTERVAL_MS)
        self.timeout_ms = int(timeout_ms or settings.JOB_TIMEOUT_MS)
        self._clock = clock
        self._active: Dict[str, _ActiveJob] = {}
        self._subscribers: Dict[str, Dict[int, JobHandlers]] = {}
        self._tokens = itertools.count(1)
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        key: str,
        poll_fn: PollFn,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
        handlers: Optional[JobHandlers] = None,
    ) -> None:
        """Start watching *key*.  Must be called from a running event loop.

        A key that is already being watched is left untouched; the new
        ``poll_fn`` and ``handlers`` are discarded.
        """
        if not key:
            log.warning("job_watch_register_ignored", reason="empty_key")
            return
        if key in self._active:
            log.debug("job_watch_register_duplicate", key=key)
            return
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        interval_ms = self.interval_ms if interval_ms is None else interval_ms
        if not _positive_ms(timeout_ms) or not _positive_ms(interval_ms):
            log.warning(
                "job_watch_register_ignored",
                reason="invalid_options",
                key=key,
                timeout_ms=timeout_ms,
                interval_ms=interval_ms,
            )
            return
        loop = asyncio.get_running_loop()

        job = WatchedJob(
            key=key,
            started_at=self._clock(),
            timeout_ms=int(timeout_ms),
            interval_ms=int(interval_ms),
        )
        self._active[key] = _ActiveJob(job=job, poll_fn=poll_fn)
        if handlers is not None:
            self.subscribe(key, handlers)

        log.info(
            "job_watch_registered",
            key=key,
            timeout_ms=job.timeout_ms,
            interval_ms=job.interval_ms,
            active=len(self._active),
        )
        self._ensure_loop(loop)

    def unregister(self, key: str) -> None:
        """Stop watching *key* without emitting any event."""
        entry = self._active.pop(key, None)
        if entry is None:
            return
        self._subscribers.pop(key, None)
        self._cancel_check(entry)
        log.info("job_watch_unregistered", key=key, active=len(self._active))
        self._stop_loop_if_idle()

    def is_watching(self, key: str) -> bool:
        return key in self._active

    def get(self, key: str) -> Optional[WatchedJob]:
        entry = self._active.get(key)
        return _snapshot(entry.job) if entry else None

    def active_jobs(self) -> List[WatchedJob]:
        return [_snapshot(entry.job) for entry in self._active.values()]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, key: str, handlers: JobHandlers) -> Callable[[], None]:
        """Deliver events for *key* to *handlers*; returns an unsubscribe callable."""
        subs = self._subscribers.setdefault(key, {})
        token = next(self._tokens)
        subs[token] = handlers

        def unsubscribe() -> None:
            subs.pop(token, None)

        return unsubscribe

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    def _ensure_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        self._loop_task = loop.create_task(
            self._run(), name="jobwatch-loop"
        )
        log.debug("job_watch_loop_started")

    def _stop_loop_if_idle(self) -> None:
        if self._active or self._loop_task is None:
            return
        task, self._loop_task = self._loop_task, None
        if task is not asyncio.current_task():
            task.cancel()
        log.debug("job_watch_loop_stopped")

    def _tick_interval_s(self) -> float:
        return min(entry.job.interval_ms for entry in self._active.values()) / 1000.0

    async def _run(self) -> None:
        me = asyncio.current_task()
        try:
            while self._active and self._loop_task is me:
                await asyncio.sleep(self._tick_interval_s())
                if self._loop_task is not me:
                    break
                self._tick()
        finally:
            if self._loop_task is me:
                self._loop_task = None

    def _tick(self) -> None:
        now = self._clock()
        for key, entry in list(self._active.items()):
            if self._active.get(key) is not entry:
                continue
            job = entry.job
            if (now - job.started_at) * 1000.0 > job.timeout_ms:
                self._finish(entry, JobStatus.TIMED_OUT)
                continue
            if entry.poll_task is not None and not entry.poll_task.done():
                # previous check still in flight
                continue
            entry.poll_task = asyncio.get_running_loop().create_task(
                self._check(entry), name=f"jobwatch-check:{key}"
            )

    async def _check(self, entry: _ActiveJob) -> None:
        key = entry.job.key
        # check tasks run in a copied context, so the binding stays local to this job
        structlog.contextvars.bind_contextvars(job_key=key)
        try:
            outcome = _coerce(await entry.poll_fn())
        except JobNotReady:
            outcome = PollResult.pending()
        except Exception as exc:  # noqa: BLE001
            log.warning("job_watch_check_error", error=str(exc), error_type=type(exc).__name__)
            outcome = PollResult.failed(str(exc) or type(exc).__name__)

        if self._active.get(key) is not entry:
            return

        if outcome.outcome is PollOutcome.COMPLETED:
            self._finish(entry, JobStatus.COMPLETED, result=outcome.result)
        elif outcome.outcome is PollOutcome.FAILED:
            self._finish(entry, JobStatus.FAILED, error=outcome.error or "Unknown error")
        elif outcome.outcome is PollOutcome.PROGRESS and outcome.progress is not None:
            self._apply_progress(entry, outcome.progress)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _apply_progress(self, entry: _ActiveJob, progress: JobProgress) -> None:
        job = entry.job
        current = job.progress
        if current is not None and (progress.step < current.step or progress == current):
            return
        job.progress = progress
        log.debug("job_watch_progress", key=job.key, step=progress.step, total=progress.total)
        subs = self._subscribers.get(job.key)
        if subs:
            self._dispatch(subs, "on_progress", _snapshot(job))

    def _finish(
        self,
        entry: _ActiveJob,
        status: JobStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        job = entry.job
        if self._active.get(job.key) is not entry:
            return

        job.status = status
        if status is JobStatus.COMPLETED:
            job.result = result
        elif status is JobStatus.FAILED:
            job.error_message = error
        snapshot = _snapshot(job)
        del self._active[job.key]

        self._cancel_check(entry)
        self._stop_loop_if_idle()

        elapsed_ms = int((self._clock() - job.started_at) * 1000)
        if status is JobStatus.FAILED:
            log.warning("job_watch_failed", key=job.key, error=error, elapsed_ms=elapsed_ms)
        else:
            log.info(f"job_watch_{status.value}", key=job.key, elapsed_ms=elapsed_ms)

        subs = self._subscribers.pop(job.key, None)
        if subs:
            self._dispatch(subs, _TERMINAL_HANDLER[status], snapshot)

    def _cancel_check(self, entry: _ActiveJob) -> None:
        task = entry.poll_task
        entry.poll_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _dispatch(self, subs: Dict[int, JobHandlers], name: str, snapshot: WatchedJob) -> None:
        for token, handlers in list(subs.items()):
            # a handler may unsubscribe others or unregister the job mid-dispatch
            if token not in subs:
                continue
            if name == "on_progress" and self._subscribers.get(snapshot.key) is not subs:
                return
            handler = getattr(handlers, name)
            if handler is None:
                continue
            try:
                handler(snapshot)
            except Exception:  # noqa: BLE001
                log.exception("job_watch_handler_failed", key=snapshot.key, handler=name)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Drop every job and stop the loop without emitting events."""
        tasks = [entry.poll_task for entry in self._active.values() if entry.poll_task]
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        self._active.clear()
        self._subscribers.clear()
        self._loop_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("job_watch_shutdown", cancelled=len(tasks))


_watcher: Optional[JobWatcher] = None


def get_watcher() -> JobWatcher:
    """Return the session-wide watcher, creating it on first use."""
    global _watcher
    if _watcher is None:
        _watcher = JobWatcher()
    return _watcher


def reset_watcher() -> None:
    global _watcher
    _watcher = None
