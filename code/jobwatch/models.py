"""Job watch data model.

``WatchedJob`` is owned and mutated by the watcher only; subscribers and
adapters receive deep copies.  ``PollResult`` is what a status check returns
on each tick.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING


class JobProgress(BaseModel):
    step: int = Field(ge=0)
    total: int = Field(ge=0)
    label: str = ""


class WatchedJob(BaseModel):
    key: str = Field(min_length=1, frozen=True)
    started_at: float = Field(frozen=True)
    timeout_ms: int = Field(gt=0, frozen=True)
    interval_ms: int = Field(gt=0, frozen=True)
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: JobStatus = JobStatus.PENDING
    progress: Optional[JobProgress] = None
    result: Optional[Any] = None
    error_message: Optional[str] = None


class PollOutcome(str, Enum):
    PENDING = "pending"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PollResult(BaseModel):
    outcome: PollOutcome
    result: Optional[Any] = None
    error: Optional[str] = None
    progress: Optional[JobProgress] = None

    @classmethod
    def pending(cls) -> "PollResult":
        return cls(outcome=PollOutcome.PENDING)

    @classmethod
    def in_progress(cls, step: int, total: int, label: str = "") -> "PollResult":
        return cls(
            outcome=PollOutcome.PROGRESS,
            progress=JobProgress(step=step, total=total, label=label),
        )

    @classmethod
    def completed(cls, result: Any = None) -> "PollResult":
        return cls(outcome=PollOutcome.COMPLETED, result=result)

    @classmethod
    def failed(cls, message: str) -> "PollResult":
        return cls(outcome=PollOutcome.FAILED, error=message)
