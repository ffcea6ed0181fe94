from __future__ import annotations

import threading
import time

import allure

from fakes import InMemoryQueue, ScriptedExecutor, wait_until
from query_worker.engine.errors import UserQueryError
from query_worker.engine.models import Job, Outcome, TabularResult, WorkerState
from query_worker.engine.worker import QueryWorker

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Worker Loop"),
]


class RecordingStopEvent(threading.Event):
    """Stop event that records every backoff wait instead of sleeping."""

    def __init__(self, *, stop_after_waits: int | None = None) -> None:
        super().__init__()
        self.waits: list[float] = []
        self.stop_after_waits = stop_after_waits

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(timeout or 0.0)
        if self.stop_after_waits is not None and len(self.waits) >= self.stop_after_waits:
            self.set()
        return self.is_set()


def _worker(
    queue: InMemoryQueue,
    executor: ScriptedExecutor,
    *,
    stop_event: threading.Event | None = None,
    idle_backoff_ms: int = 1_000,
    fault_backoff_ms: int = 5_000,
) -> QueryWorker:
    return QueryWorker(
        ordinal=1,
        queue=queue,
        executor=executor,
        stop_event=stop_event,
        idle_backoff_ms=idle_backoff_ms,
        fault_backoff_ms=fault_backoff_ms,
        query_timeout_seconds=300,
    )


def test_select_one_persists_encoded_document() -> None:
    queue = InMemoryQueue([Job(job_id="J1", query_sql="SELECT 1 AS X")])
    executor = ScriptedExecutor({"SELECT 1 AS X": TabularResult.from_rows(["X"], [("1",)])})

    summary = _worker(queue, executor).run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    assert queue.results == {
        "J1": Outcome.success("<Resultado><Fila><X>1</X></Fila></Resultado>"),
    }
    assert executor.calls == [("SELECT 1 AS X", 300)]


def test_syntax_error_is_persisted_verbatim_as_failure() -> None:
    queue = InMemoryQueue([Job(job_id="J2", query_sql="SELEC 1")])
    executor = ScriptedExecutor({"SELEC 1": UserQueryError("near 'SELEC'")})

    summary = _worker(queue, executor).run_once()

    assert summary.failed == 1
    assert summary.faults == 0
    assert queue.results == {"J2": Outcome.failure("near 'SELEC'")}


def test_zero_rows_persist_success_without_document() -> None:
    queue = InMemoryQueue([Job(job_id="J3", query_sql="SELECT * FROM t WHERE 0 = 1")])
    executor = ScriptedExecutor(default=TabularResult())

    summary = _worker(queue, executor).run_once()

    assert summary.succeeded == 1
    outcome = queue.results["J3"]
    assert outcome.succeeded
    assert outcome.document is None
    assert outcome.error_message is None


def test_unencodable_values_become_failure_outcome() -> None:
    queue = InMemoryQueue([Job(job_id="J4", query_sql="SELECT blob")])
    executor = ScriptedExecutor(default=TabularResult.from_rows(["blob"], [("\x00",)]))

    summary = _worker(queue, executor).run_once()

    assert summary.failed == 1
    assert "not allowed in XML" in (queue.results["J4"].error_message or "")


def test_unexpected_executor_crash_is_persisted_as_failure() -> None:
    queue = InMemoryQueue([Job(job_id="J5", query_sql="SELECT 1")])
    executor = ScriptedExecutor(default=RuntimeError("driver exploded"))

    summary = _worker(queue, executor).run_once()

    assert summary.failed == 1
    assert queue.results["J5"] == Outcome.failure("driver exploded")


def test_empty_queue_counts_empty_poll_without_execution() -> None:
    queue = InMemoryQueue()
    executor = ScriptedExecutor()
    worker = _worker(queue, executor)

    summary = worker.run_once()

    assert summary.processed == 0
    assert summary.empty_polls == 1
    assert executor.calls == []
    assert worker.state == WorkerState.IDLE


def test_claim_fault_backs_off_for_fault_interval_then_retries() -> None:
    queue = InMemoryQueue([Job(job_id="J6", query_sql="SELECT 1")])
    queue.claim_errors = 1
    stop_event = RecordingStopEvent(stop_after_waits=2)
    worker = _worker(
        queue,
        ScriptedExecutor(default=TabularResult.from_rows(["v"], [("1",)])),
        stop_event=stop_event,
        idle_backoff_ms=1_000,
        fault_backoff_ms=5_000,
    )

    summary = worker.run_loop()

    assert stop_event.waits == [5.0, 1.0]
    assert summary.faults == 1
    assert summary.succeeded == 1
    assert list(queue.results) == ["J6"]
    assert worker.state == WorkerState.STOPPED


def test_claim_fault_sleeps_at_least_fault_backoff_between_claims() -> None:
    queue = InMemoryQueue([Job(job_id="J7", query_sql="SELECT 1")])
    queue.claim_errors = 1
    stop_event = threading.Event()
    worker = _worker(queue, ScriptedExecutor(), stop_event=stop_event, fault_backoff_ms=200)

    thread = threading.Thread(target=worker.run_loop, kwargs={"drain": True})
    thread.start()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert len(queue.claim_times) >= 2
    assert queue.claim_times[1] - queue.claim_times[0] >= 0.19
    assert "J7" in queue.results


def test_persist_fault_loses_outcome_and_does_not_retry_job() -> None:
    queue = InMemoryQueue(
        [Job(job_id="J8", query_sql="SELECT 1"), Job(job_id="J9", query_sql="SELECT 2")],
    )
    queue.store_errors = 1
    stop_event = RecordingStopEvent()
    worker = _worker(queue, ScriptedExecutor(), stop_event=stop_event, fault_backoff_ms=5_000)

    summary = worker.run_loop(drain=True)

    assert queue.claims == ["J8", "J9"]
    assert queue.store_calls == ["J8", "J9"]
    assert "J8" not in queue.results
    assert "J9" in queue.results
    assert summary.faults == 1
    assert summary.processed == 2
    assert stop_event.waits == [5.0]


def test_user_failure_does_not_back_off() -> None:
    queue = InMemoryQueue(
        [Job(job_id="A", query_sql="bad"), Job(job_id="B", query_sql="SELECT 1")],
    )
    executor = ScriptedExecutor({"bad": UserQueryError("syntax error")})
    stop_event = RecordingStopEvent()

    summary = _worker(queue, executor, stop_event=stop_event).run_loop(drain=True)

    assert summary.failed == 1
    assert summary.succeeded == 1
    assert stop_event.waits == []


def test_stop_during_idle_backoff_exits_without_more_queue_calls() -> None:
    queue = InMemoryQueue()
    stop_event = threading.Event()
    worker = _worker(queue, ScriptedExecutor(), stop_event=stop_event, idle_backoff_ms=60_000)

    thread = threading.Thread(target=worker.run_loop)
    thread.start()
    assert wait_until(lambda: len(queue.claim_times) == 1)

    started = time.monotonic()
    stop_event.set()
    thread.join(timeout=2)

    assert not thread.is_alive()
    assert time.monotonic() - started < 2
    assert len(queue.claim_times) == 1
    assert worker.state == WorkerState.STOPPED


def test_run_once_after_stop_does_not_touch_queue() -> None:
    queue = InMemoryQueue([Job(job_id="J10", query_sql="SELECT 1")])
    stop_event = threading.Event()
    stop_event.set()

    summary = _worker(queue, ScriptedExecutor(), stop_event=stop_event).run_once()

    assert summary.processed == 0
    assert queue.claim_times == []


def test_in_flight_job_completes_after_stop_request() -> None:
    queue = InMemoryQueue([Job(job_id="slow", query_sql="SELECT pg_sleep(1)")])
    executor = ScriptedExecutor(
        default=TabularResult.from_rows(["v"], [("done",)]),
        delay_seconds=0.3,
    )
    stop_event = threading.Event()
    worker = _worker(queue, executor, stop_event=stop_event)

    thread = threading.Thread(target=worker.run_loop)
    thread.start()
    assert wait_until(lambda: len(executor.calls) == 1)
    stop_event.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert queue.results["slow"].document == "<Resultado><Fila><v>done</v></Fila></Resultado>"
    assert len(queue.claim_times) == 1
