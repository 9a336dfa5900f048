"""Named work queues with per-job retry, backoff and retention defaults."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from agent_loop.errors import ValidationFailedError
from agent_loop.jobs.models import (
    BackoffPolicy,
    JobOptions,
    JobStatus,
    JobView,
    PurgeSummary,
    QueueStats,
    RetentionPolicy,
)
from agent_loop.jobs.repository import JobRepository
from agent_loop.storage.common import utc_now

logger = logging.getLogger(__name__)


class JobQueue:
    """Enqueue facade applying default retry and retention policy."""

    def __init__(
        self,
        repository: JobRepository,
        *,
        default_attempts: int = 3,
        default_backoff: BackoffPolicy | None = None,
        retention: RetentionPolicy | None = None,
    ) -> None:
        self.repository = repository
        self.default_attempts = default_attempts
        self.default_backoff = default_backoff or BackoffPolicy()
        self.retention = retention or RetentionPolicy()

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobView:
        options = options or JobOptions()
        attempts = options.attempts if options.attempts is not None else self.default_attempts
        if attempts <= 0:
            raise ValidationFailedError("Job attempts must be a positive integer")
        if not queue_name or not job_name:
            raise ValidationFailedError("Job queue name and job name are required")

        job = self.repository.insert_job(
            queue_name=queue_name,
            job_name=job_name,
            payload=payload,
            max_attempts=attempts,
            backoff=options.backoff or self.default_backoff,
            run_after=utc_now() + timedelta(seconds=max(0.0, options.delay_seconds)),
            job_key=options.job_key,
        )
        logger.debug("Enqueued %s/%s job_id=%s", queue_name, job_name, job.job_id)
        return job

    def get(self, job_id: str) -> JobView | None:
        return self.repository.get_job(job_id=job_id)

    def list_jobs(
        self,
        queue_name: str | None = None,
        *,
        status: JobStatus | None = None,
        job_name: str | None = None,
        limit: int = 100,
    ) -> list[JobView]:
        return self.repository.list_jobs(
            queue_name=queue_name,
            status=status,
            job_name=job_name,
            limit=limit,
        )

    def stats(self, queue_name: str) -> QueueStats:
        return self.repository.stats(queue_name=queue_name)

    def queue_names(self) -> list[str]:
        return self.repository.queue_names()

    def purge(self, queue_name: str) -> PurgeSummary:
        summary = self.repository.purge(queue_name=queue_name, retention=self.retention)
        if summary.succeeded_removed or summary.failed_removed:
            logger.info(
                "Purged queue %s: succeeded=%d failed=%d",
                queue_name,
                summary.succeeded_removed,
                summary.failed_removed,
            )
        return summary
