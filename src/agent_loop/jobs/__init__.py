"""Durable SQLite-backed job queue and workers."""

from agent_loop.jobs.models import (
    BackoffPolicy,
    BackoffType,
    JobOptions,
    JobStatus,
    JobView,
    QueueStats,
    RetentionPolicy,
)
from agent_loop.jobs.queue import JobQueue
from agent_loop.jobs.worker import QueueWorker, WorkerRunSummary

__all__ = [
    "BackoffPolicy",
    "BackoffType",
    "JobOptions",
    "JobQueue",
    "JobStatus",
    "JobView",
    "QueueStats",
    "QueueWorker",
    "RetentionPolicy",
    "WorkerRunSummary",
]
