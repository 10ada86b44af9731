"""Status checks: poll functions built over backend status endpoints.

Each builder closes over an ``ApiClient`` and returns a zero-argument coroutine
function suitable for ``JobWatcher.register``.  Whether a 404 means "still
processing" or "gone" is endpoint-specific, so every builder decides it
explicitly.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from jobwatch.integrations.api_client import ApiClient, ApiError
from jobwatch.models import PollResult
from jobwatch.watcher import JobNotReady, PollFn

COMPLETED_STATES = frozenset({"completed", "succeeded", "done", "ready"})
FAILED_STATES = frozenset({"error", "failed"})


def _progress_fields(payload: Dict[str, Any]) -> Optional[PollResult]:
    nested = payload.get("progress")
    if isinstance(nested, dict) and nested.get("step") is not None:
        return PollResult.in_progress(
            step=int(nested["step"]),
            total=int(nested.get("total") or 0),
            label=str(nested.get("label") or ""),
        )
    if payload.get("progress_step") is not None:
        return PollResult.in_progress(
            step=int(payload["progress_step"]),
            total=int(payload.get("progress_total") or 0),
            label=str(payload.get("progress_message") or ""),
        )
    return None


def parse_status_payload(payload: Any, result_key: Optional[str] = None) -> PollResult:
    """Map a ``{status, ...}`` payload onto a poll outcome."""
    if not payload:
        return PollResult.pending()
    if not isinstance(payload, dict):
        return PollResult.failed("Malformed status response")

    status = str(payload.get("status") or "").lower()
    if status in COMPLETED_STATES:
        return PollResult.completed(payload.get(result_key) if result_key else payload)
    if status in FAILED_STATES:
        message = (
            payload.get("error_message")
            or payload.get("error")
            or payload.get("detail")
            or "Unknown error occurred"
        )
        return PollResult.failed(str(message))

    return _progress_fields(payload) or PollResult.pending()


def resource_status_check(
    client: ApiClient,
    path: str,
    *,
    not_found_is_pending: bool = False,
    result_key: Optional[str] = None,
) -> PollFn:
    async def check() -> PollResult:
        try:
            payload = await client.get(path)
        except ApiError as exc:
            if not_found_is_pending and exc.is_not_found:
                raise JobNotReady(path) from exc
            raise
        return parse_status_payload(payload, result_key=result_key)

    return check


def summary_check(client: ApiClient, project_id: str) -> PollFn:
    """The summary resource 404s until generation finishes."""
    path = f"/analysis/projects/{project_id}/summary"

    async def check() -> PollResult:
        try:
            summary = await client.get(path)
        except ApiError as exc:
            if exc.is_not_found:
                raise JobNotReady(path) from exc
            raise
        if not summary:
            return PollResult.pending()
        return PollResult.completed(summary)

    return check


def report_export_check(client: ApiClient, project_id: str, export_id: str) -> PollFn:
    return resource_status_check(
        client,
        f"/projects/{project_id}/reports/status/{export_id}",
        result_key="download_url",
    )
