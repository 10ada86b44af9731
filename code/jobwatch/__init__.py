"""jobwatch - background job watching for the analytics front-end."""

__version__ = "0.1.0"

from jobwatch.models import JobProgress, JobStatus, PollOutcome, PollResult, WatchedJob  # noqa: E402
from jobwatch.watcher import (  # noqa: E402
    JobHandlers,
    JobNotReady,
    JobWatcher,
    get_watcher,
    reset_watcher,
)

__all__ = [
    "JobHandlers",
    "JobNotReady",
    "JobProgress",
    "JobStatus",
    "JobWatcher",
    "PollOutcome",
    "PollResult",
    "WatchedJob",
    "get_watcher",
    "reset_watcher",
]
