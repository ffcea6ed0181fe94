"""Queue worker that executes user SQL queries and persists their outcome.

One worker runs one loop on its own thread::

    idle -> claiming -> (empty | claimed) -> executing -> persisting -> idle

- an empty queue sleeps ``idle_backoff_ms`` before the next claim;
- a failing user query is persisted as a failure outcome, the loop goes on;
- an ``InfrastructureError`` while claiming or persisting sleeps
  ``fault_backoff_ms``; the outcome of the job in hand, if any, is lost and
  the job is not retried by this worker.

The loop only ends when the shared stop event is set. A unit of work that is
already in flight is completed first.
"""

from __future__ import annotations

import logging
import threading

from query_worker.engine.encoder import encode_result
from query_worker.engine.errors import InfrastructureError, UserQueryError
from query_worker.engine.executor import QueryExecutor
from query_worker.engine.models import Job, Outcome, WorkerRunSummary, WorkerState
from query_worker.engine.queue import QueueClient

logger = logging.getLogger(__name__)


class QueryWorker:
    """Consumes queued jobs and executes them via the query executor."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        ordinal: int,
        queue: QueueClient,
        executor: QueryExecutor,
        stop_event: threading.Event | None = None,
        idle_backoff_ms: int = 1_000,
        fault_backoff_ms: int = 5_000,
        query_timeout_seconds: int = 300,
    ) -> None:
        self.ordinal = ordinal
        self.queue = queue
        self.executor = executor
        self.stop_event = stop_event or threading.Event()
        self.idle_backoff_ms = idle_backoff_ms
        self.fault_backoff_ms = fault_backoff_ms
        self.query_timeout_seconds = query_timeout_seconds
        self.state = WorkerState.IDLE

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            return summary

        self.state = WorkerState.CLAIMING
        try:
            job = self.queue.claim_next()
        except InfrastructureError:
            self._record_fault(operation="claim_next", job_id=None)
            summary.faults = 1
            return summary

        if job is None:
            self.state = WorkerState.IDLE
            summary.empty_polls = 1
            logger.debug("Worker #%d: queue is empty", self.ordinal)
            return summary

        summary.processed = 1
        logger.info("Worker #%d: processing job %s", self.ordinal, job.job_id)
        outcome = self._execute(job)

        self.state = WorkerState.PERSISTING
        try:
            self.queue.store_result(job.job_id, outcome)
        except InfrastructureError:
            self._record_fault(operation="store_result", job_id=job.job_id)
            summary.faults = 1
            return summary

        if outcome.succeeded:
            summary.succeeded = 1
        else:
            summary.failed = 1
        self.state = WorkerState.IDLE
        return summary

    def run_loop(self, *, drain: bool = False) -> WorkerRunSummary:
        """Run until the stop event is set.

        Args:
            drain: Also return on the first empty poll instead of backing off.
        """

        aggregate = WorkerRunSummary()
        logger.info("Worker #%d ready", self.ordinal)
        while not self.stop_requested:
            try:
                summary = self.run_once()
            except Exception:
                logger.exception("Worker #%d: unexpected error", self.ordinal)
                self.state = WorkerState.INFRASTRUCTURE_FAULT
                summary = WorkerRunSummary(faults=1)
            aggregate.add(summary)

            if summary.faults:
                self._pause(self.fault_backoff_ms)
                self.state = WorkerState.IDLE
                continue
            if summary.empty_polls:
                if drain:
                    break
                self._pause(self.idle_backoff_ms)

        self.state = WorkerState.STOPPED
        logger.info(
            "Worker #%d stopped: processed=%d succeeded=%d failed=%d faults=%d",
            self.ordinal,
            aggregate.processed,
            aggregate.succeeded,
            aggregate.failed,
            aggregate.faults,
        )
        return aggregate

    def _execute(self, job: Job) -> Outcome:
        self.state = WorkerState.EXECUTING
        try:
            result = self.executor.execute(job.query_sql, self.query_timeout_seconds)
            if result.is_empty:
                return Outcome.success(None)
            return Outcome.success(encode_result(result))
        except UserQueryError as error:
            logger.error(
                "Worker #%d: user query failed for job %s. %s",
                self.ordinal,
                job.job_id,
                error,
            )
            return Outcome.failure(str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Worker #%d: query execution crashed for job %s",
                self.ordinal,
                job.job_id,
            )
            return Outcome.failure(str(error) or type(error).__name__)

    def _record_fault(self, *, operation: str, job_id: str | None) -> None:
        self.state = WorkerState.INFRASTRUCTURE_FAULT
        logger.error(
            "Worker #%d: infrastructure error during %s (job=%s). Retrying in %d ms",
            self.ordinal,
            operation,
            job_id or "-",
            self.fault_backoff_ms,
            exc_info=True,
        )

    def _pause(self, milliseconds: int) -> None:
        if milliseconds > 0:
            self.stop_event.wait(timeout=milliseconds / 1000.0)
