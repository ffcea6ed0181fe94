"""Controllers for query-worker CLI commands."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from query_worker.config import Settings
from query_worker.engine.models import JobStatus, JobView
from query_worker.engine.pool import WorkerPool
from query_worker.storage.repository import JobRepository


@dataclass(slots=True)
class InitDbCommand:
    """CLI input for schema migration."""

    database_url: str | None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for job enqueue."""

    database_url: str | None
    query_sql: str
    job_id: str | None = None


@dataclass(slots=True)
class RunPoolCommand:
    """CLI input for worker pool execution."""

    database_url: str | None
    worker_count: int | None
    drain: bool
    log_level: str = "INFO"


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    database_url: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobCommand:
    """CLI input for single-job operations (inspect, requeue)."""

    database_url: str | None
    job_id: str


@dataclass(slots=True)
class WaitJobCommand:
    """CLI input for blocking until a job completes."""

    database_url: str | None
    job_id: str
    timeout_seconds: float
    poll_ms: int


@dataclass(slots=True)
class WaitJobResult:
    """Printable lines plus whether the job completed successfully."""

    lines: list[str]
    ok: bool


class QueryWorkerCliController:
    """Application service methods used by CLI commands."""

    def init_db(self, command: InitDbCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        with _repository(settings):
            pass
        return ["Job store schema is up to date."]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        with _repository(settings) as repository:
            job = repository.enqueue(command.query_sql, job_id=command.job_id)
        return [job.job_id]

    def run_pool(self, command: RunPoolCommand) -> list[str]:
        """Run the worker pool until a termination signal (or drain)."""

        logging.basicConfig(
            level=command.log_level.upper(),
            format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
        )
        settings = Settings.from_env(database_url=command.database_url)
        if command.worker_count is not None:
            settings.worker.worker_count = command.worker_count
        if settings.queue.backend == "table":
            with _repository(settings):
                pass
        pool = WorkerPool.from_settings(settings, drain=command.drain)
        total = pool.run_until_stopped().total
        return [
            "Pool summary: "
            f"workers={pool.worker_count} processed={total.processed} "
            f"succeeded={total.succeeded} failed={total.failed} "
            f"faults={total.faults} empty_polls={total.empty_polls}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        status = JobStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status, limit=command.limit)
        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.job_id} status={job.status.value} outcome={_outcome_label(job)} "
            f"worker={job.worker_id or '-'} created_at={job.created_at.isoformat()}"
            for job in jobs
        ]

    def inspect(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        with _repository(settings) as repository:
            job = repository.get_job(job_id=command.job_id)
        lines = [
            f"job_id: {job.job_id}",
            f"status: {job.status.value}",
            f"outcome: {_outcome_label(job)}",
            f"worker: {job.worker_id or '-'}",
            f"created_at: {job.created_at.isoformat()}",
            f"claimed_at: {job.claimed_at.isoformat() if job.claimed_at else '-'}",
            f"completed_at: {job.completed_at.isoformat() if job.completed_at else '-'}",
            f"query: {job.query_sql}",
        ]
        if job.error_message is not None:
            lines.append(f"error: {job.error_message}")
        if job.result_xml is not None:
            lines.append(f"result: {job.result_xml}")
        return lines

    def requeue(self, command: JobCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        with _repository(settings) as repository:
            job = repository.requeue(job_id=command.job_id)
        return [f"Job {job.job_id} is {job.status.value}."]

    def wait(self, command: WaitJobCommand) -> WaitJobResult:
        """Poll the store until the job is completed or the timeout elapses."""

        settings = Settings.from_env(database_url=command.database_url)
        deadline = time.monotonic() + max(0.0, command.timeout_seconds)
        with _repository(settings) as repository:
            while True:
                job = repository.get_job(job_id=command.job_id)
                outcome = job.outcome
                if outcome is not None:
                    if outcome.error_message is not None:
                        return WaitJobResult(lines=[outcome.error_message], ok=False)
                    return WaitJobResult(lines=[outcome.document or ""], ok=True)
                if time.monotonic() >= deadline:
                    return WaitJobResult(
                        lines=[f"Timed out waiting for job {job.job_id} ({job.status.value})."],
                        ok=False,
                    )
                time.sleep(max(1, command.poll_ms) / 1000.0)


def _outcome_label(job: JobView) -> str:
    outcome = job.outcome
    if outcome is None:
        return "-"
    if not outcome.succeeded:
        return "failure"
    return "success" if outcome.document is not None else "success(no rows)"


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.require_database_url(),
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
