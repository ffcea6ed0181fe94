"""CLI entrypoint for query-worker."""

import sys
from collections.abc import Callable
from typing import TypeVar

import rich_click as click

from query_worker import __version__
from query_worker.engine.controllers import (
    EnqueueCommand,
    InitDbCommand,
    JobCommand,
    ListJobsCommand,
    QueryWorkerCliController,
    RunPoolCommand,
    WaitJobCommand,
)
from query_worker.engine.errors import ConfigurationError, InfrastructureError, JobNotFoundError
from query_worker.engine.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueryWorkerCliController()

_DATABASE_URL_HELP = "SQLAlchemy database URL. Overrides QUERY_WORKER_DATABASE_URL."

CommandT = TypeVar("CommandT")
ResultT = TypeVar("ResultT")


@click.group()
@click.version_option(version=__version__, prog_name="query-worker")
def query_worker() -> None:
    """Concurrent SQL query job worker."""


@query_worker.command("init-db")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
def init_db(database_url: str | None) -> None:
    """Apply job store migrations."""

    _emit_lines(_guard(CONTROLLER.init_db, InitDbCommand(database_url=database_url)))


@query_worker.command("enqueue")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--query", "query_sql", required=True, help="SQL text to execute.")
@click.option("--job-id", default=None, help="Explicit job id (default: random UUID).")
def enqueue(database_url: str | None, query_sql: str, job_id: str | None) -> None:
    """Queue one query job and print its id."""

    _emit_lines(
        _guard(
            CONTROLLER.enqueue,
            EnqueueCommand(database_url=database_url, query_sql=query_sql, job_id=job_id),
        ),
    )


@query_worker.command("run")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option(
    "--workers",
    "worker_count",
    type=click.IntRange(min=1),
    default=None,
    help="Number of workers. Overrides QUERY_WORKER_WORKER_COUNT.",
)
@click.option(
    "--drain/--forever",
    default=False,
    show_default=True,
    help="Stop once every worker finds the queue empty, or run until SIGINT/SIGTERM.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def run(database_url: str | None, worker_count: int | None, drain: bool, log_level: str) -> None:
    """Run the worker pool."""

    _emit_lines(
        _guard(
            CONTROLLER.run_pool,
            RunPoolCommand(
                database_url=database_url,
                worker_count=worker_count,
                drain=drain,
                log_level=log_level,
            ),
        ),
    )


@query_worker.command("jobs")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs(database_url: str | None, status: str | None, limit: int) -> None:
    """List latest jobs."""

    _emit_lines(
        _guard(
            CONTROLLER.list_jobs,
            ListJobsCommand(database_url=database_url, status=status, limit=limit),
        ),
    )


@query_worker.command("inspect")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--job-id", required=True, help="Job id.")
def inspect(database_url: str | None, job_id: str) -> None:
    """Show one job with its outcome."""

    _emit_lines(_guard(CONTROLLER.inspect, JobCommand(database_url=database_url, job_id=job_id)))


@query_worker.command("requeue")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--job-id", required=True, help="Job id.")
def requeue(database_url: str | None, job_id: str) -> None:
    """Return an orphaned running job to the queue."""

    _emit_lines(_guard(CONTROLLER.requeue, JobCommand(database_url=database_url, job_id=job_id)))


@query_worker.command("wait")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0),
    default=30.0,
    show_default=True,
    help="Give up after this many seconds.",
)
@click.option(
    "--poll-ms",
    type=click.IntRange(min=1),
    default=200,
    show_default=True,
    help="Store polling interval.",
)
def wait(database_url: str | None, job_id: str, timeout_seconds: float, poll_ms: int) -> None:
    """Block until a job completes; print its document or error."""

    result = _guard(
        CONTROLLER.wait,
        WaitJobCommand(
            database_url=database_url,
            job_id=job_id,
            timeout_seconds=timeout_seconds,
            poll_ms=poll_ms,
        ),
    )
    _emit_lines(result.lines)
    if not result.ok:
        sys.exit(1)


def _guard(handler: Callable[[CommandT], ResultT], command: CommandT) -> ResultT:
    try:
        return handler(command)
    except ConfigurationError as error:
        raise click.UsageError(str(error)) from error
    except (InfrastructureError, JobNotFoundError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    query_worker()
