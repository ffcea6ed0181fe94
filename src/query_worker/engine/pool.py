"""Fixed-size pool of query workers sharing one stop event."""

from __future__ import annotations

import logging
import signal
import socket
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from uuid import uuid4

from query_worker.config import Settings
from query_worker.engine.errors import InfrastructureError, QueryWorkerError
from query_worker.engine.executor import QueryExecutor, SqlAlchemyQueryExecutor
from query_worker.engine.models import PoolSummary, WorkerRunSummary
from query_worker.engine.queue import (
    QueueClient,
    RepositoryQueueClient,
    StoredProcedureQueueClient,
)
from query_worker.engine.worker import QueryWorker
from query_worker.storage.repository import JobRepository

logger = logging.getLogger(__name__)

QueueFactory = Callable[[int], QueueClient]
ExecutorFactory = Callable[[int], QueryExecutor]


class WorkerPool:
    """Runs ``worker_count`` independent workers, one thread each.

    Every worker builds its own queue client and executor through the
    factories, so no connection is shared between threads. The only shared
    object is the stop event.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue_factory: QueueFactory,
        executor_factory: ExecutorFactory,
        worker_count: int = 2,
        idle_backoff_ms: int = 1_000,
        fault_backoff_ms: int = 5_000,
        query_timeout_seconds: int = 300,
        drain: bool = False,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.queue_factory = queue_factory
        self.executor_factory = executor_factory
        self.worker_count = worker_count
        self.idle_backoff_ms = idle_backoff_ms
        self.fault_backoff_ms = fault_backoff_ms
        self.query_timeout_seconds = query_timeout_seconds
        self.drain = drain
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._summaries: dict[int, WorkerRunSummary] = {}
        self._summaries_lock = threading.Lock()
        self._startup_errors: dict[int, Exception] = {}
        self._stop_signal_name: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings, *, drain: bool = False) -> WorkerPool:
        """Build a pool whose workers talk to the configured database."""

        settings.validate()
        pool_id = f"{socket.gethostname()}-{uuid4().hex[:8]}"

        def _queue_factory(ordinal: int) -> QueueClient:
            if settings.queue.backend == "procedure":
                return StoredProcedureQueueClient(
                    settings.require_database_url(),
                    claim_procedure=settings.queue.claim_procedure,
                    store_procedure=settings.queue.store_procedure,
                )
            repository = JobRepository(
                settings.require_database_url(),
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            )
            return RepositoryQueueClient(repository, worker_id=f"{pool_id}#{ordinal}")

        def _executor_factory(_: int) -> QueryExecutor:
            return SqlAlchemyQueryExecutor(
                settings.effective_query_database_url,
                commit=settings.worker.commit_user_queries,
                sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
            )

        return cls(
            queue_factory=_queue_factory,
            executor_factory=_executor_factory,
            worker_count=settings.worker.worker_count,
            idle_backoff_ms=settings.worker.idle_backoff_ms,
            fault_backoff_ms=settings.worker.fault_backoff_ms,
            query_timeout_seconds=settings.worker.query_timeout_seconds,
            drain=drain,
        )

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def stop_signal_name(self) -> str | None:
        return self._stop_signal_name

    def start(self) -> None:
        """Spawn one thread per worker ordinal 1..N."""

        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop_event.clear()
        logger.info("Starting query worker pool with %d workers", self.worker_count)
        for ordinal in range(1, self.worker_count + 1):
            thread = threading.Thread(
                target=self._run_worker,
                args=(ordinal,),
                name=f"query-worker-{ordinal}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def stop(self, timeout: float | None = None) -> PoolSummary:
        """Signal every worker to stop and wait for in-flight work to finish."""

        self._stop_event.set()
        self.join(timeout=timeout)
        if not self.is_running:
            self._threads = []
        logger.info("Query worker pool stopped")
        return self.summary()

    def join(self, timeout: float | None = None) -> None:
        """Wait for worker threads without requesting a stop."""

        for thread in self._threads:
            thread.join(timeout=timeout)

    def run_until_stopped(self) -> PoolSummary:
        """Start the pool and block until SIGINT/SIGTERM, ``stop()`` or drain.

        Raises the startup error of the first worker when no worker could
        build its queue client and executor.
        """

        with self._signal_handlers():
            self.start()
            while self.is_running and not self._stop_event.is_set():
                self._stop_event.wait(timeout=0.2)
            summary = self.stop()
        if not summary.workers and self._startup_errors:
            error = self._startup_errors[min(self._startup_errors)]
            if isinstance(error, QueryWorkerError):
                raise error
            raise InfrastructureError("start", f"no worker could start: {error}") from error
        return summary

    def summary(self) -> PoolSummary:
        with self._summaries_lock:
            return PoolSummary(workers=dict(self._summaries))

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def _run_worker(self, ordinal: int) -> None:
        queue: QueueClient | None = None
        executor: QueryExecutor | None = None
        try:
            queue = self.queue_factory(ordinal)
            executor = self.executor_factory(ordinal)
        except Exception as error:
            logger.exception("Worker #%d failed to start", ordinal)
            with self._summaries_lock:
                self._startup_errors[ordinal] = error
            _close_all(executor, queue)
            return

        try:
            worker = QueryWorker(
                ordinal=ordinal,
                queue=queue,
                executor=executor,
                stop_event=self._stop_event,
                idle_backoff_ms=self.idle_backoff_ms,
                fault_backoff_ms=self.fault_backoff_ms,
                query_timeout_seconds=self.query_timeout_seconds,
            )
            summary = worker.run_loop(drain=self.drain)
            with self._summaries_lock:
                self._summaries[ordinal] = summary
        finally:
            _close_all(executor, queue)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        if self._stop_signal_name is None:
            self._stop_signal_name = signal_name
            logger.info("Received %s, stopping workers after in-flight jobs", signal_name)
        self._stop_event.set()


def _close_all(*resources: QueueClient | QueryExecutor | None) -> None:
    for resource in resources:
        if resource is not None:
            resource.close()
