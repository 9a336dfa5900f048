"""Queue worker: claim ready jobs, run their handlers, commit or retry."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from agent_loop.errors import AppError
from agent_loop.jobs.models import JobView
from agent_loop.jobs.queue import JobQueue
from agent_loop.storage.common import utc_now

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobView], Any]


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    FAILED = "failed"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class QueueWorker:
    """Consumes one named queue with bounded concurrency.

    Up to ``concurrency`` ready jobs are claimed per poll and run on a thread
    pool. With ``concurrency=1`` jobs run inline in claim order, which keeps
    per-queue delivery order.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        queue_name: str,
        handlers: Mapping[str, JobHandler],
        worker_id: str,
        concurrency: int = 5,
        poll_interval_seconds: float = 1.0,
        stale_job_seconds: int = 1_800,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("Worker concurrency must be a positive integer")
        self.queue = queue
        self.queue_name = queue_name
        self.handlers = dict(handlers)
        self.worker_id = worker_id
        self.concurrency = concurrency
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_job_seconds = stale_job_seconds
        self._stop_requested = False
        self._executor: ThreadPoolExecutor | None = None

    def run_once(self) -> WorkerRunSummary:
        """Claim and process at most ``concurrency`` ready jobs."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        jobs: list[JobView] = []
        while len(jobs) < self.concurrency:
            job = self.queue.repository.claim_next(
                queue_name=self.queue_name,
                worker_id=self.worker_id,
            )
            if job is None:
                break
            jobs.append(job)
        if not jobs:
            summary.idle_polls = 1
            return summary

        if len(jobs) == 1 or self.concurrency == 1:
            outcomes = [self._execute(job) for job in jobs]
        else:
            outcomes = list(self._pool().map(self._execute, jobs))

        for outcome in outcomes:
            summary.processed += 1
            if outcome == JobOutcome.SUCCEEDED:
                summary.succeeded += 1
            elif outcome == JobOutcome.RETRIED:
                summary.retried += 1
            else:
                summary.failed += 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle, ``max_jobs`` are processed or a stop signal arrives.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        self.recover_stale()
        try:
            with self._signal_handlers():
                while True:
                    if self._stop_requested:
                        return aggregate
                    if max_jobs is not None and aggregate.processed >= max_jobs:
                        return aggregate

                    summary = self.run_once()
                    aggregate.add(summary)
                    if summary.processed == 0:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            return aggregate
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue
                    consecutive_idle = 0
        finally:
            self.queue.purge(self.queue_name)
            self.shutdown()

    def recover_stale(self) -> int:
        recovered = self.queue.repository.recover_stale(
            queue_name=self.queue_name,
            stale_after_seconds=self.stale_job_seconds,
        )
        if recovered:
            logger.warning("Requeued %d stale jobs on %s", recovered, self.queue_name)
        return recovered

    def request_stop(self) -> None:
        self._stop_requested = True

    def resume(self) -> None:
        self._stop_requested = False

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix=f"worker-{self.queue_name}",
            )
        return self._executor

    def _execute(self, job: JobView) -> JobOutcome:
        handler = self.handlers.get(job.job_name)
        if handler is None:
            error = f"No handler registered for job {job.job_name!r} on {self.queue_name}"
            logger.error(error)
            self.queue.repository.fail_job(job_id=job.job_id, error=error)
            return JobOutcome.FAILED

        try:
            result = handler(job)
        except Exception as error:  # noqa: BLE001
            return self._handle_retry_or_fail(job=job, error=error)

        if not self.queue.repository.complete_job(job_id=job.job_id, result=result):
            logger.warning("Job %s was no longer running at completion", job.job_id)
        return JobOutcome.SUCCEEDED

    def _handle_retry_or_fail(self, *, job: JobView, error: Exception) -> JobOutcome:
        summary = f"{type(error).__name__}: {error}"
        retryable = error.retryable if isinstance(error, AppError) else True
        if not retryable or job.attempt >= job.max_attempts:
            logger.error(
                "Job %s/%s failed permanently on attempt %d/%d: %s",
                self.queue_name,
                job.job_name,
                job.attempt,
                job.max_attempts,
                summary,
            )
            self.queue.repository.fail_job(job_id=job.job_id, error=summary)
            return JobOutcome.FAILED

        delay_ms = job.backoff.delay_for(job.attempt)
        logger.warning(
            "Job %s/%s attempt %d/%d failed, retrying in %dms: %s",
            self.queue_name,
            job.job_name,
            job.attempt,
            job.max_attempts,
            delay_ms,
            summary,
        )
        self.queue.repository.schedule_retry(
            job_id=job.job_id,
            run_after=utc_now() + timedelta(milliseconds=delay_ms),
            error=summary,
        )
        return JobOutcome.RETRIED

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Stop requested by %s", signal.Signals(signum).name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
