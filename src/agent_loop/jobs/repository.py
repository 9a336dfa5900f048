"""Persistent job storage with atomic claim and guarded state transitions."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_loop.jobs.models import (
    BackoffPolicy,
    BackoffType,
    JobStatus,
    JobView,
    PurgeSummary,
    QueueStats,
    RetentionPolicy,
)
from agent_loop.storage.alembic_runner import upgrade_head
from agent_loop.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    to_utc_aware_optional,
    utc_now,
)
from agent_loop.storage.sqlmodel_models import JobRow


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def insert_job(  # noqa: PLR0913
        self,
        *,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        max_attempts: int,
        backoff: BackoffPolicy,
        run_after: datetime,
        job_key: str | None = None,
    ) -> JobView:
        """Create a queued job; an existing job with the same key is returned instead."""

        if job_key is not None:
            existing = self.get_job_by_key(job_key=job_key)
            if existing is not None:
                return existing

        now = utc_now()
        row = JobRow(
            job_id=str(uuid4()),
            queue_name=queue_name,
            job_name=job_name,
            job_key=job_key,
            payload_json=json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str),
            status=JobStatus.QUEUED.value,
            attempt=0,
            max_attempts=max_attempts,
            backoff_type=backoff.type.value,
            backoff_delay_ms=backoff.delay_ms,
            run_after=to_db_datetime(run_after),
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                if job_key is None:
                    raise
                existing = self.get_job_by_key(job_key=job_key)
                if existing is None:
                    raise
                return existing
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self, *, queue_name: str, worker_id: str) -> JobView | None:
        """Atomically claim one ready job of the queue."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(JobRow)
                    .where(
                        JobRow.queue_name == queue_name,
                        JobRow.status == JobStatus.QUEUED.value,
                        JobRow.run_after <= to_db_datetime(now),
                    )
                    .order_by(col(JobRow.run_after).asc(), col(JobRow.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == candidate.job_id,
                        col(JobRow.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        started_at=to_db_datetime(now),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.exec(
                    select(JobRow).where(JobRow.job_id == candidate.job_id),
                ).one()
                return _to_job_view(claimed)

    def complete_job(self, *, job_id: str, result: Any = None) -> bool:
        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            values={
                "status": JobStatus.SUCCEEDED.value,
                "finished_at": now,
                "updated_at": now,
                "last_error": None,
                "result_json": (
                    json.dumps(result, ensure_ascii=False, sort_keys=True, default=str)
                    if result is not None
                    else None
                ),
            },
        )

    def fail_job(self, *, job_id: str, error: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            values={
                "status": JobStatus.FAILED.value,
                "finished_at": now,
                "updated_at": now,
                "last_error": error[:4000],
            },
        )

    def schedule_retry(self, *, job_id: str, run_after: datetime, error: str) -> bool:
        return self._transition(
            job_id=job_id,
            values={
                "status": JobStatus.QUEUED.value,
                "run_after": to_db_datetime(run_after),
                "started_at": None,
                "worker_id": None,
                "updated_at": to_db_datetime(utc_now()),
                "last_error": error[:4000],
            },
        )

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def get_job_by_key(self, *, job_key: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(JobRow).where(JobRow.job_key == job_key)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        queue_name: str | None = None,
        status: JobStatus | None = None,
        job_name: str | None = None,
        limit: int = 100,
    ) -> list[JobView]:
        with Session(self.engine) as session:
            query = select(JobRow)
            if queue_name is not None:
                query = query.where(JobRow.queue_name == queue_name)
            if status is not None:
                query = query.where(JobRow.status == status.value)
            if job_name is not None:
                query = query.where(JobRow.job_name == job_name)
            rows = session.exec(
                query.order_by(col(JobRow.created_at).asc()).limit(max(1, limit)),
            ).all()
            return [_to_job_view(row) for row in rows]

    def stats(self, *, queue_name: str) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow.status, func.count())
                .where(JobRow.queue_name == queue_name)
                .group_by(JobRow.status),
            ).all()
        counts = {status: 0 for status in JobStatus}
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return QueueStats(queue_name=queue_name, counts=counts)

    def queue_names(self) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(select(JobRow.queue_name).distinct()).all()
        return sorted(str(name) for name in rows)

    def purge(self, *, queue_name: str, retention: RetentionPolicy) -> PurgeSummary:
        """Drop finished jobs that fall outside the retention policy."""

        now = utc_now()
        succeeded_cutoff = to_db_datetime(
            now - timedelta(seconds=retention.succeeded_max_age_seconds),
        )
        failed_cutoff = to_db_datetime(now - timedelta(seconds=retention.failed_max_age_seconds))
        summary = PurgeSummary()
        with Session(self.engine) as session:
            aged = session.exec(
                sa_delete(JobRow).where(
                    col(JobRow.queue_name) == queue_name,
                    col(JobRow.status) == JobStatus.SUCCEEDED.value,
                    col(JobRow.finished_at) < succeeded_cutoff,
                ),
            )
            summary.succeeded_removed += aged.rowcount or 0

            keep_ids = session.exec(
                select(JobRow.job_id)
                .where(
                    JobRow.queue_name == queue_name,
                    JobRow.status == JobStatus.SUCCEEDED.value,
                )
                .order_by(col(JobRow.finished_at).desc())
                .limit(max(0, retention.succeeded_max_count)),
            ).all()
            overflow = session.exec(
                sa_delete(JobRow).where(
                    col(JobRow.queue_name) == queue_name,
                    col(JobRow.status) == JobStatus.SUCCEEDED.value,
                    col(JobRow.job_id).not_in(list(keep_ids)),
                ),
            )
            summary.succeeded_removed += overflow.rowcount or 0

            failed = session.exec(
                sa_delete(JobRow).where(
                    col(JobRow.queue_name) == queue_name,
                    col(JobRow.status) == JobStatus.FAILED.value,
                    col(JobRow.finished_at) < failed_cutoff,
                ),
            )
            summary.failed_removed += failed.rowcount or 0
            session.commit()
        return summary

    def recover_stale(self, *, queue_name: str, stale_after_seconds: int) -> int:
        """Requeue jobs left running by a worker that went away."""

        now = utc_now()
        cutoff = to_db_datetime(now - timedelta(seconds=max(1, stale_after_seconds)))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.queue_name) == queue_name,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                    col(JobRow.started_at) < cutoff,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=to_db_datetime(now),
                    worker_id=None,
                    started_at=None,
                    last_error="Recovered after stale running state",
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return result.rowcount or 0

    def _transition(self, *, job_id: str, values: dict[str, Any]) -> bool:
        """Apply values to a running job; False when it is no longer running."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _to_job_view(row: JobRow) -> JobView:
    return JobView(
        job_id=row.job_id,
        queue_name=row.queue_name,
        job_name=row.job_name,
        job_key=row.job_key,
        payload=json.loads(row.payload_json),
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        backoff=BackoffPolicy(type=BackoffType(row.backoff_type), delay_ms=row.backoff_delay_ms),
        run_after=to_utc_aware(row.run_after),
        started_at=to_utc_aware_optional(row.started_at),
        finished_at=to_utc_aware_optional(row.finished_at),
        worker_id=row.worker_id,
        last_error=row.last_error,
        result=json.loads(row.result_json) if row.result_json else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
