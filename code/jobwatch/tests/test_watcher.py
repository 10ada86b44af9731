"""Tests for the JobWatcher polling engine.

Covers:
- completion, timeout and dedup scenarios
- exactly-once terminal delivery and progress ordering
- loop teardown / restart after the active set drains
- cancellation from handlers and unsubscribe semantics
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, List, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from pydantic import ValidationError

from jobwatch.models import JobStatus, PollResult
from jobwatch.watcher import JobHandlers, JobNotReady, JobWatcher, get_watcher, reset_watcher


# ===========================================================================
# Helpers
# ===========================================================================


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def _mock_handlers() -> JobHandlers:
    return JobHandlers(
        on_progress=MagicMock(),
        on_completed=MagicMock(),
        on_failed=MagicMock(),
        on_timeout=MagicMock(),
    )


def _terminal_calls(handlers: JobHandlers) -> int:
    return (
        handlers.on_completed.call_count
        + handlers.on_failed.call_count
        + handlers.on_timeout.call_count
    )


@pytest_asyncio.fixture
async def watcher():
    w = JobWatcher(interval_ms=10, timeout_ms=1000)
    yield w
    await w.shutdown()


# ===========================================================================
# Core scenarios
# ===========================================================================


@pytest.mark.asyncio
async def test_completes_after_pending_ticks(watcher: JobWatcher):
    poll = AsyncMock(side_effect=[JobNotReady(), JobNotReady(), {"summary": "ok"}])
    handlers = _mock_handlers()

    watcher.register("p1", poll, timeout_ms=1000, interval_ms=10, handlers=handlers)
    await _wait_for(lambda: _terminal_calls(handlers) > 0)

    handlers.on_completed.assert_called_once()
    job = handlers.on_completed.call_args.args[0]
    assert job.key == "p1"
    assert job.status is JobStatus.COMPLETED
    assert job.result == {"summary": "ok"}
    handlers.on_progress.assert_not_called()
    assert poll.await_count == 3
    assert not watcher.is_watching("p1")


@pytest.mark.asyncio
async def test_times_out_when_never_available(watcher: JobWatcher):
    poll = AsyncMock(return_value=None)
    handlers = _mock_handlers()

    watcher.register("p2", poll, timeout_ms=50, interval_ms=10, handlers=handlers)
    await _wait_for(lambda: _terminal_calls(handlers) > 0)

    handlers.on_timeout.assert_called_once()
    assert handlers.on_timeout.call_args.args[0].status is JobStatus.TIMED_OUT
    handlers.on_completed.assert_not_called()
    handlers.on_failed.assert_not_called()
    assert not watcher.is_watching("p2")
    assert watcher.active_jobs() == []


@pytest.mark.asyncio
async def test_duplicate_registration_keeps_first_poll_fn(watcher: JobWatcher):
    first = AsyncMock(return_value=PollResult.completed("first"))
    second = AsyncMock(return_value=PollResult.completed("second"))
    handlers = _mock_handlers()

    watcher.register("p3", first, handlers=handlers)
    watcher.register("p3", second, handlers=_mock_handlers())
    assert len(watcher.active_jobs()) == 1

    await _wait_for(lambda: _terminal_calls(handlers) > 0)
    await asyncio.sleep(0.05)

    first.assert_awaited_once()
    second.assert_not_awaited()
    assert handlers.on_completed.call_args.args[0].result == "first"


@pytest.mark.asyncio
async def test_duplicate_registration_delivers_single_terminal_event(watcher: JobWatcher):
    poll = AsyncMock(side_effect=[None, "done"])
    handlers = _mock_handlers()
    watcher.subscribe("dup", handlers)

    watcher.register("dup", poll)
    watcher.register("dup", poll)
    await _wait_for(lambda: not watcher.is_watching("dup"))
    await asyncio.sleep(0.05)

    assert _terminal_calls(handlers) == 1
    handlers.on_completed.assert_called_once()


# ===========================================================================
# Timeout precedence and teardown
# ===========================================================================


@pytest.mark.asyncio
async def test_timeout_takes_precedence_over_success():
    now = [0.0]
    watcher = JobWatcher(interval_ms=10, timeout_ms=100, clock=lambda: now[0])
    poll = AsyncMock(return_value=PollResult.completed("late"))
    handlers = _mock_handlers()

    watcher.register("slow", poll, handlers=handlers)
    now[0] = 1.0
    await _wait_for(lambda: _terminal_calls(handlers) > 0)

    handlers.on_timeout.assert_called_once()
    handlers.on_completed.assert_not_called()
    poll.assert_not_awaited()
    await watcher.shutdown()


@pytest.mark.asyncio
async def test_timeout_cancels_in_flight_check(watcher: JobWatcher):
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def hanging_poll() -> Any:
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return "never"

    handlers = _mock_handlers()
    watcher.register("hang", hanging_poll, timeout_ms=40, interval_ms=10, handlers=handlers)
    await _wait_for(lambda: _terminal_calls(handlers) > 0)
    await _wait_for(cancelled.is_set)

    assert started.is_set()
    handlers.on_timeout.assert_called_once()
    handlers.on_completed.assert_not_called()


@pytest.mark.asyncio
async def test_no_polling_after_active_set_drains(watcher: JobWatcher):
    poll = AsyncMock(return_value="done")
    watcher.register("once", poll)

    await _wait_for(lambda: not watcher.is_watching("once"))
    calls = poll.await_count
    await asyncio.sleep(0.08)

    assert poll.await_count == calls == 1
    assert watcher._loop_task is None


@pytest.mark.asyncio
async def test_loop_restarts_after_drain(watcher: JobWatcher):
    first = _mock_handlers()
    watcher.register("a", AsyncMock(return_value="one"), handlers=first)
    await _wait_for(lambda: _terminal_calls(first) > 0)
    assert watcher._loop_task is None

    second = _mock_handlers()
    watcher.register("a", AsyncMock(return_value="two"), handlers=second)
    assert watcher._loop_task is not None
    await _wait_for(lambda: _terminal_calls(second) > 0)

    assert second.on_completed.call_args.args[0].result == "two"
    assert first.on_completed.call_count == 1


# ===========================================================================
# Independence and failure handling
# ===========================================================================


@pytest.mark.asyncio
async def test_failure_does_not_affect_other_jobs(watcher: JobWatcher):
    failing = AsyncMock(side_effect=RuntimeError("boom"))
    healthy = AsyncMock(side_effect=[None, None, "ok"])
    bad_handlers = _mock_handlers()
    good_handlers = _mock_handlers()

    watcher.register("bad", failing, handlers=bad_handlers)
    watcher.register("good", healthy, handlers=good_handlers)
    await _wait_for(lambda: _terminal_calls(good_handlers) > 0)

    bad_handlers.on_failed.assert_called_once()
    failed_job = bad_handlers.on_failed.call_args.args[0]
    assert failed_job.status is JobStatus.FAILED
    assert failed_job.error_message == "boom"

    good_handlers.on_completed.assert_called_once()
    good_handlers.on_failed.assert_not_called()
    assert good_handlers.on_completed.call_args.args[0].result == "ok"


@pytest.mark.asyncio
async def test_explicit_failed_result(watcher: JobWatcher):
    handlers = _mock_handlers()
    watcher.register("f", AsyncMock(return_value=PollResult.failed("backend said no")), handlers=handlers)
    await _wait_for(lambda: _terminal_calls(handlers) > 0)

    assert handlers.on_failed.call_args.args[0].error_message == "backend said no"


@pytest.mark.asyncio
async def test_handler_exception_does_not_block_other_subscribers(watcher: JobWatcher):
    broken = JobHandlers(on_completed=MagicMock(side_effect=ValueError("ui crashed")))
    ok = _mock_handlers()
    watcher.subscribe("h", broken)
    watcher.subscribe("h", ok)

    watcher.register("h", AsyncMock(return_value="done"))
    await _wait_for(lambda: _terminal_calls(ok) > 0)

    broken.on_completed.assert_called_once()
    ok.on_completed.assert_called_once()


# ===========================================================================
# Progress events
# ===========================================================================


@pytest.mark.asyncio
async def test_progress_events_precede_terminal_and_never_regress(watcher: JobWatcher):
    poll = AsyncMock(
        side_effect=[
            PollResult.in_progress(1, 3, "loading"),
            PollResult.in_progress(1, 3, "loading"),
            PollResult.in_progress(0, 3, "stale"),
            PollResult.in_progress(2, 3, "rendering"),
            PollResult.completed("file.pptx"),
        ]
    )
    events: List[Tuple[str, Any]] = []
    handlers = JobHandlers(
        on_progress=lambda job: events.append(("progress", job.progress.step)),
        on_completed=lambda job: events.append(("completed", job.result)),
        on_failed=lambda job: events.append(("failed", job.error_message)),
    )

    watcher.register("r", poll, handlers=handlers)
    await _wait_for(lambda: bool(events) and events[-1][0] == "completed")

    assert events == [("progress", 1), ("progress", 2), ("completed", "file.pptx")]


@pytest.mark.asyncio
async def test_progress_visible_in_snapshot(watcher: JobWatcher):
    results = iter([PollResult.in_progress(1, 4, "step one")])

    async def poll() -> Any:
        return next(results, None)

    watcher.register("snap", poll)
    await _wait_for(lambda: watcher.get("snap").progress is not None)

    job = watcher.get("snap")
    assert job.status is JobStatus.PENDING
    assert job.progress.label == "step one"


# ===========================================================================
# Cancellation and subscriptions
# ===========================================================================


@pytest.mark.asyncio
async def test_unregister_from_handler_stops_delivery(watcher: JobWatcher):
    poll = AsyncMock(side_effect=[PollResult.in_progress(1, 2, "half"), "done"])
    second = _mock_handlers()

    def cancel_on_progress(job):
        watcher.unregister(job.key)

    watcher.register("c", poll, handlers=JobHandlers(on_progress=cancel_on_progress))
    watcher.subscribe("c", second)
    await _wait_for(lambda: not watcher.is_watching("c"))
    await asyncio.sleep(0.05)

    second.on_progress.assert_not_called()
    assert _terminal_calls(second) == 0
    assert poll.await_count == 1


@pytest.mark.asyncio
async def test_unregister_is_idempotent(watcher: JobWatcher):
    handlers = _mock_handlers()
    watcher.register("u", AsyncMock(return_value=None), handlers=handlers)

    watcher.unregister("u")
    watcher.unregister("u")
    watcher.unregister("missing")
    await asyncio.sleep(0.05)

    assert not watcher.is_watching("u")
    assert _terminal_calls(handlers) == 0
    assert watcher._loop_task is None


@pytest.mark.asyncio
async def test_unsubscribe_only_affects_that_subscriber(watcher: JobWatcher):
    gone = _mock_handlers()
    kept = _mock_handlers()
    unsubscribe = watcher.subscribe("s", gone)
    watcher.subscribe("s", kept)

    watcher.register("s", AsyncMock(side_effect=[None, "done"]))
    unsubscribe()
    await _wait_for(lambda: _terminal_calls(kept) > 0)

    assert _terminal_calls(gone) == 0
    kept.on_completed.assert_called_once()


@pytest.mark.asyncio
async def test_empty_key_is_ignored(watcher: JobWatcher):
    poll = AsyncMock()
    watcher.register("", poll)

    assert watcher.active_jobs() == []
    assert watcher._loop_task is None


@pytest.mark.asyncio
async def test_shutdown_drops_jobs_without_events():
    watcher = JobWatcher(interval_ms=10, timeout_ms=1000)
    handlers = _mock_handlers()
    watcher.register("x", AsyncMock(return_value=None), handlers=handlers)

    await watcher.shutdown()
    await asyncio.sleep(0.03)

    assert not watcher.is_watching("x")
    assert _terminal_calls(handlers) == 0


# ===========================================================================
# Model and accessor behaviour
# ===========================================================================


@pytest.mark.asyncio
async def test_snapshots_are_detached_and_started_at_is_frozen(watcher: JobWatcher):
    watcher.register("ro", AsyncMock(return_value=None))
    snapshot = watcher.get("ro")
    snapshot.status = JobStatus.FAILED

    assert watcher.get("ro").status is JobStatus.PENDING
    with pytest.raises(ValidationError):
        snapshot.started_at = 0.0


def test_get_watcher_is_a_session_singleton():
    reset_watcher()
    try:
        assert get_watcher() is get_watcher()
        first = get_watcher()
        reset_watcher()
        assert get_watcher() is not first
    finally:
        reset_watcher()


# ===========================================================================
# Edge cases
# ===========================================================================


@pytest.mark.asyncio
async def test_uncopyable_result_still_delivers_terminal_event(watcher: JobWatcher):
    lock = threading.Lock()
    handlers = _mock_handlers()
    other = _mock_handlers()

    watcher.register("lock", AsyncMock(return_value={"handle": lock}), handlers=handlers)
    watcher.register("other", AsyncMock(side_effect=[None, "fine"]), handlers=other)
    await _wait_for(lambda: _terminal_calls(handlers) > 0 and _terminal_calls(other) > 0)

    handlers.on_completed.assert_called_once()
    job = handlers.on_completed.call_args.args[0]
    assert job.status is JobStatus.COMPLETED
    assert job.result["handle"] is lock
    assert not watcher.is_watching("lock")
    other.on_completed.assert_called_once()


@pytest.mark.asyncio
async def test_unregister_absent_key_keeps_early_subscribers(watcher: JobWatcher):
    handlers = _mock_handlers()
    watcher.subscribe("early", handlers)

    watcher.unregister("early")
    watcher.register("early", AsyncMock(return_value="ready"))
    await _wait_for(lambda: _terminal_calls(handlers) > 0)

    handlers.on_completed.assert_called_once()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "options",
    [{"timeout_ms": 0}, {"timeout_ms": -5}, {"interval_ms": 0}, {"interval_ms": -1}],
)
async def test_invalid_options_are_ignored(watcher: JobWatcher, options):
    poll = AsyncMock(return_value="done")

    watcher.register("bad-options", poll, **options)
    await asyncio.sleep(0.03)

    assert not watcher.is_watching("bad-options")
    assert watcher._loop_task is None
    poll.assert_not_awaited()
