"""Domain models for the durable job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

CLOSED_LOOP_QUEUE = "closed-loop-pipeline"
SELF_REPAIR_QUEUE = "self-repair"
AGENT_MESSAGES_QUEUE = "agent-messages"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BackoffType(str, Enum):
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Delay before the next attempt after a failed one."""

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 1_000

    def delay_for(self, attempt: int) -> int:
        """Milliseconds to wait after ``attempt`` (1-based) failed."""

        if self.delay_ms <= 0:
            return 0
        if self.type == BackoffType.FIXED:
            return self.delay_ms
        return self.delay_ms * (2 ** max(0, attempt - 1))


@dataclass(slots=True, frozen=True)
class RetentionPolicy:
    """How long finished jobs are kept for inspection."""

    succeeded_max_age_seconds: int = 24 * 3_600
    succeeded_max_count: int = 1_000
    failed_max_age_seconds: int = 7 * 24 * 3_600


@dataclass(slots=True)
class JobOptions:
    """Per-enqueue overrides of the queue defaults."""

    attempts: int | None = None
    backoff: BackoffPolicy | None = None
    job_key: str | None = None
    delay_seconds: float = 0.0


@dataclass(slots=True)
class JobView:
    """Readable job view for workers and CLI."""

    job_id: str
    queue_name: str
    job_name: str
    job_key: str | None
    payload: dict[str, Any]
    status: JobStatus
    attempt: int
    max_attempts: int
    backoff: BackoffPolicy
    run_after: datetime
    started_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    last_error: str | None
    result: Any
    created_at: datetime
    updated_at: datetime

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt)


@dataclass(slots=True)
class QueueStats:
    queue_name: str
    counts: dict[JobStatus, int] = field(default_factory=dict)

    def count(self, status: JobStatus) -> int:
        return self.counts.get(status, 0)


@dataclass(slots=True)
class PurgeSummary:
    succeeded_removed: int = 0
    failed_removed: int = 0
