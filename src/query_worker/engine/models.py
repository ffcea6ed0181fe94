"""Domain models for the query job queue and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"


class WorkerState(str, Enum):
    """Worker loop states, exposed for observability."""

    IDLE = "idle"
    CLAIMING = "claiming"
    EXECUTING = "executing"
    PERSISTING = "persisting"
    INFRASTRUCTURE_FAULT = "infrastructure_fault"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class Job:
    """Claimed unit of work."""

    job_id: str
    query_sql: str


@dataclass(frozen=True, slots=True)
class Cell:
    """One named textual cell; ``value is None`` means SQL NULL."""

    name: str
    value: str | None


@dataclass(frozen=True, slots=True)
class TabularResult:
    """First result set of a query, every value reduced to text."""

    rows: tuple[tuple[Cell, ...], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.rows

    @classmethod
    def from_rows(
        cls,
        columns: list[str] | tuple[str, ...],
        rows: list[tuple[str | None, ...]] | tuple[tuple[str | None, ...], ...],
    ) -> TabularResult:
        """Build from column names and positional row values."""

        return cls(
            rows=tuple(
                tuple(Cell(name=name, value=value) for name, value in zip(columns, row, strict=True))
                for row in rows
            ),
        )


@dataclass(frozen=True, slots=True)
class Outcome:
    """Terminal result of a job: a document (possibly absent) or an error message."""

    document: str | None = None
    error_message: str | None = None

    def __post_init__(self) -> None:
        if self.document is not None and self.error_message is not None:
            raise ValueError("Outcome cannot carry both a document and an error message.")

    @property
    def succeeded(self) -> bool:
        return self.error_message is None

    @classmethod
    def success(cls, document: str | None) -> Outcome:
        return cls(document=document)

    @classmethod
    def failure(cls, message: str) -> Outcome:
        return cls(error_message=message)


@dataclass(slots=True)
class JobView:
    """Readable job row for CLI inspection."""

    job_id: str
    query_sql: str
    status: JobStatus
    result_xml: str | None
    error_message: str | None
    worker_id: str | None
    created_at: datetime
    claimed_at: datetime | None
    completed_at: datetime | None

    @property
    def outcome(self) -> Outcome | None:
        if self.status != JobStatus.COMPLETED:
            return None
        if self.error_message is not None:
            return Outcome.failure(self.error_message)
        return Outcome.success(self.result_xml)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    empty_polls: int = 0
    faults: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.empty_polls += other.empty_polls
        self.faults += other.faults


@dataclass(slots=True)
class PoolSummary:
    """Per-worker summaries keyed by worker ordinal."""

    workers: dict[int, WorkerRunSummary] = field(default_factory=dict)

    @property
    def total(self) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        for summary in self.workers.values():
            aggregate.add(summary)
        return aggregate
