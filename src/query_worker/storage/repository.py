"""Persistent queue repository for query jobs."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from query_worker.engine.errors import InfrastructureError, JobNotFoundError
from query_worker.engine.models import Job, JobStatus, JobView, Outcome
from query_worker.storage.alembic_runner import upgrade_head
from query_worker.storage.common import as_utc, build_engine, utc_now
from query_worker.storage.sqlmodel_models import QueryJob


class JobRepository:
    """Queue persistence facade backed by SQLModel."""

    def __init__(self, database_url: str, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.database_url = database_url
        self.engine = build_engine(database_url, sqlite_busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.database_url)

    def enqueue(self, query_sql: str, *, job_id: str | None = None) -> JobView:
        """Create a queued job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = QueryJob(
                job_id=job_id or str(uuid4()),
                query_sql=query_sql,
                status=JobStatus.QUEUED.value,
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(self, *, worker_id: str) -> Job | None:
        """Atomically claim the oldest queued job.

        The status-guarded UPDATE is the compare-and-swap: when another
        worker wins the race the row count is zero and the next candidate
        is tried.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueryJob)
                    .where(QueryJob.status == JobStatus.QUEUED.value)
                    .order_by(col(QueryJob.created_at).asc(), col(QueryJob.job_id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueryJob)
                    .where(
                        col(QueryJob.job_id) == candidate.job_id,
                        col(QueryJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.RUNNING.value,
                        worker_id=worker_id,
                        claimed_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return Job(job_id=candidate.job_id, query_sql=candidate.query_sql)

    def store_result(self, *, job_id: str, outcome: Outcome) -> None:
        """Record *outcome* and mark the running job completed."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueryJob)
                .where(
                    col(QueryJob.job_id) == job_id,
                    col(QueryJob.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_xml=outcome.document,
                    error_message=outcome.error_message,
                    completed_at=utc_now(),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InfrastructureError(
                    "store_result",
                    f"job {job_id} is not running and cannot be completed",
                )
            session.commit()

    def requeue(self, *, job_id: str) -> JobView:
        """Return an orphaned running job to the queue."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueryJob)
                .where(
                    col(QueryJob.job_id) == job_id,
                    col(QueryJob.status) == JobStatus.RUNNING.value,
                )
                .values(status=JobStatus.QUEUED.value, worker_id=None, claimed_at=None),
            )
            session.commit()
            if result.rowcount != 1:
                view = self.get_job(job_id=job_id)
                raise ValueError(
                    f"Job {job_id} is {view.status.value}; only running jobs can be requeued.",
                )
        return self.get_job(job_id=job_id)

    def get_job(self, *, job_id: str) -> JobView:
        with Session(self.engine) as session:
            row = session.get(QueryJob, job_id)
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            return _to_job_view(row)

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 20) -> list[JobView]:
        with Session(self.engine) as session:
            statement = select(QueryJob)
            if status is not None:
                statement = statement.where(QueryJob.status == status.value)
            rows = session.exec(
                statement.order_by(col(QueryJob.created_at).desc()).limit(max(1, limit)),
            ).all()
            return [_to_job_view(row) for row in rows]


def _to_job_view(row: QueryJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        query_sql=row.query_sql,
        status=JobStatus(row.status),
        result_xml=row.result_xml,
        error_message=row.error_message,
        worker_id=row.worker_id,
        created_at=as_utc(row.created_at),  # type: ignore[arg-type]
        claimed_at=as_utc(row.claimed_at),
        completed_at=as_utc(row.completed_at),
    )
