"""Report export tracking.

Submits a report-generation request, then follows the export through the
watcher and keeps a step-indexed readout for a progress bar.  The backend
rarely reports real progress, so while it is silent the readout advances
through fixed phases on a timer, stopping at the last one.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Callable, List, Literal, Optional

import structlog
from pydantic import BaseModel

from jobwatch.config import settings
from jobwatch.integrations.api_client import ApiClient, ApiError
from jobwatch.models import PollOutcome, PollResult, WatchedJob
from jobwatch.status_checks import report_export_check
from jobwatch.watcher import JobHandlers, JobWatcher, PollFn

log = structlog.get_logger(__name__)

REPORT_PHASES = [
    "Gathering analyses...",
    "Identifying key findings...",
    "Building slides...",
    "Finalizing...",
]
TIMEOUT_MESSAGE = "Report generation timed out"


class ReportStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ReportOptions(BaseModel):
    language: str = "es"
    research_brief: Optional[str] = None
    theme: Literal["modern_dark", "corporate_light", "minimal"] = "modern_dark"
    depth: Literal["compact", "standard", "detailed"] = "standard"
    include_speaker_notes: bool = False
    conversation_ids: Optional[List[str]] = None


class ProgressReadout(BaseModel):
    step: int = 0
    total: int = len(REPORT_PHASES)
    label: str = REPORT_PHASES[0]


def with_phase_fallback(
    check: PollFn,
    phase_interval_s: float,
    clock: Callable[[], float] = time.monotonic,
) -> PollFn:
    """Report a timed phase whenever *check* is still pending without progress."""
    started = clock()

    async def check_with_phases() -> PollResult:
        outcome = await check()
        if outcome.outcome is not PollOutcome.PENDING:
            return outcome
        phase = min(int((clock() - started) // phase_interval_s), len(REPORT_PHASES) - 1)
        return PollResult.in_progress(step=phase, total=len(REPORT_PHASES), label=REPORT_PHASES[phase])

    return check_with_phases


class ReportExportTracker:
    def __init__(
        self,
        watcher: JobWatcher,
        client: ApiClient,
        project_id: str,
        on_change: Optional[Callable[["ReportExportTracker"], None]] = None,
    ) -> None:
        self._watcher = watcher
        self._client = client
        self.project_id = project_id
        self._on_change = on_change
        self.status = ReportStatus.IDLE
        self.export_id: Optional[str] = None
        self.download_url: Optional[str] = None
        self.error: Optional[str] = None
        self.progress = ProgressReadout()

    def _key(self, export_id: str) -> str:
        return f"report:{self.project_id}:{export_id}"

    def _changed(self) -> None:
        if self._on_change:
            self._on_change(self)

    async def generate(self, options: ReportOptions) -> None:
        self.reset()
        self.status = ReportStatus.PROCESSING
        self._changed()
        try:
            response = await self._client.post(
                f"/projects/{self.project_id}/reports/generate",
                options.model_dump(exclude_none=True),
            )
        except ApiError as exc:
            log.warning("report_generate_failed", project_id=self.project_id, status=exc.status, error=exc.message)
            self._fail(exc.message or "Error generating report")
            return
        export_id = response.get("export_id") if isinstance(response, dict) else None
        if not export_id:
            log.warning("report_generate_no_export_id", project_id=self.project_id, response=response)
            self._fail("Error generating report")
            return
        self.watch(str(export_id))

    def watch(self, export_id: str) -> None:
        """Follow an export that has already been submitted."""
        self.export_id = export_id
        self.status = ReportStatus.PROCESSING
        check = with_phase_fallback(
            report_export_check(self._client, self.project_id, export_id),
            settings.REPORT_PHASE_INTERVAL_S,
        )
        self._watcher.register(
            self._key(export_id),
            check,
            handlers=JobHandlers(
                on_progress=self._on_progress,
                on_completed=self._on_completed,
                on_failed=self._on_failed,
                on_timeout=self._on_timeout,
            ),
        )
        self._changed()

    def reset(self) -> None:
        if self.export_id:
            self._watcher.unregister(self._key(self.export_id))
        self.status = ReportStatus.IDLE
        self.export_id = None
        self.download_url = None
        self.error = None
        self.progress = ProgressReadout()

    # ------------------------------------------------------------------
    # Watcher callbacks
    # ------------------------------------------------------------------

    def _on_progress(self, job: WatchedJob) -> None:
        if job.progress is None:
            return
        self.progress = ProgressReadout(**job.progress.model_dump())
        self._changed()

    def _on_completed(self, job: WatchedJob) -> None:
        self.status = ReportStatus.COMPLETED
        self.download_url = job.result or None
        self.progress = ProgressReadout(step=len(REPORT_PHASES), label=REPORT_PHASES[-1])
        self._changed()

    def _on_failed(self, job: WatchedJob) -> None:
        self._fail(job.error_message or "Error checking report status")

    def _on_timeout(self, job: WatchedJob) -> None:
        self._fail(TIMEOUT_MESSAGE)

    def _fail(self, message: str) -> None:
        self.status = ReportStatus.ERROR
        self.error = message
        self._changed()
