"""Executive-summary notifications.

Pending summaries are watched in the background; when one becomes available a
persistent notification with a "view summary" action is handed to the UI sink.
Slow generation is tolerated: timeouts are dropped without telling the user.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

import structlog
from pydantic import BaseModel

from jobwatch.config import settings
from jobwatch.integrations.api_client import ApiClient
from jobwatch.models import WatchedJob
from jobwatch.status_checks import summary_check
from jobwatch.watcher import JobHandlers, JobWatcher

log = structlog.get_logger(__name__)


class NotificationAction(BaseModel):
    label: str
    route: str


class Notification(BaseModel):
    kind: str = "success"
    title: str
    description: str = ""
    duration_ms: int
    action: Optional[NotificationAction] = None


class SummaryNotifier:
    def __init__(
        self,
        watcher: JobWatcher,
        client: ApiClient,
        notify: Callable[[Notification], None],
    ) -> None:
        self._watcher = watcher
        self._client = client
        self._notify = notify
        self._project_names: Dict[str, str] = {}

    @staticmethod
    def _key(project_id: str) -> str:
        return f"summary:{project_id}"

    def add_pending_summary(self, project_id: str, project_name: str) -> None:
        key = self._key(project_id)
        if self._watcher.is_watching(key):
            return
        self._project_names[project_id] = project_name
        self._watcher.register(
            key,
            summary_check(self._client, project_id),
            handlers=JobHandlers(
                on_completed=lambda job: self._on_ready(project_id, job),
                on_failed=lambda job: self._on_failed(project_id, job),
                on_timeout=lambda job: self._on_timeout(project_id, job),
            ),
        )

    def remove_pending_summary(self, project_id: str) -> None:
        self._project_names.pop(project_id, None)
        self._watcher.unregister(self._key(project_id))

    def has_pending_summary(self, project_id: str) -> bool:
        return self._watcher.is_watching(self._key(project_id))

    # ------------------------------------------------------------------
    # Watcher callbacks
    # ------------------------------------------------------------------

    def _on_ready(self, project_id: str, job: WatchedJob) -> None:
        name = self._project_names.pop(project_id, "")
        self._notify(
            Notification(
                title="Executive summary ready",
                description=name,
                duration_ms=settings.SUMMARY_TOAST_DURATION_MS,
                action=NotificationAction(
                    label="View summary",
                    route=f"/projects/{project_id}/summary",
                ),
            )
        )

    def _on_failed(self, project_id: str, job: WatchedJob) -> None:
        self._project_names.pop(project_id, None)
        log.error("summary_check_failed", project_id=project_id, error=job.error_message)

    def _on_timeout(self, project_id: str, job: WatchedJob) -> None:
        self._project_names.pop(project_id, None)
        log.debug("summary_watch_timed_out", project_id=project_id)
