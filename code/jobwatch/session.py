"""Application wiring for the job watcher.

One session per running application: logging is configured, the shared
watcher and a backend client are created, and feature adapters are built from
them.  ``watch_session`` tears everything down on exit, dropping any jobs that
are still being watched.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

import httpx
import structlog

from jobwatch.adapters import Notification, ReportExportTracker, SummaryNotifier
from jobwatch.integrations.api_client import ApiClient
from jobwatch.integrations.logging_setup import configure_logging
from jobwatch.watcher import JobWatcher, get_watcher, reset_watcher

log = structlog.get_logger(__name__)


class WatchSession:
    def __init__(self, watcher: JobWatcher, client: ApiClient) -> None:
        self.watcher = watcher
        self.client = client

    def summary_notifier(self, notify: Callable[[Notification], None]) -> SummaryNotifier:
        return SummaryNotifier(self.watcher, self.client, notify)

    def report_tracker(
        self,
        project_id: str,
        on_change: Optional[Callable[[ReportExportTracker], None]] = None,
    ) -> ReportExportTracker:
        return ReportExportTracker(self.watcher, self.client, project_id, on_change=on_change)

    async def close(self) -> None:
        active = len(self.watcher.active_jobs())
        await self.watcher.shutdown()
        await self.client.aclose()
        if self.watcher is get_watcher():
            reset_watcher()
        log.info("watch_session_closed", dropped_jobs=active)


def open_session(
    base_url: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
    log_level: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WatchSession:
    configure_logging(log_level)
    session = WatchSession(
        get_watcher(),
        ApiClient(base_url=base_url, headers=headers, transport=transport),
    )
    log.info("watch_session_opened", interval_ms=session.watcher.interval_ms, timeout_ms=session.watcher.timeout_ms)
    return session


@asynccontextmanager
async def watch_session(**kwargs) -> AsyncIterator[WatchSession]:
    session = open_session(**kwargs)
    try:
        yield session
    finally:
        await session.close()
