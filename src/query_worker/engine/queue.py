"""Queue client contract and its store-backed implementations."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from query_worker.config import is_valid_procedure_name
from query_worker.engine.errors import ConfigurationError, InfrastructureError
from query_worker.engine.models import Job, Outcome
from query_worker.storage.common import build_engine
from query_worker.storage.repository import JobRepository


class QueueClient(Protocol):
    """Atomic claim / store-result primitives of the backing queue.

    Implementations guarantee that no two concurrent callers of
    ``claim_next`` receive the same job, and raise ``InfrastructureError``
    for any store failure.
    """

    def claim_next(self) -> Job | None:
        """Reserve at most one pending job."""

    def store_result(self, job_id: str, outcome: Outcome) -> None:
        """Persist the outcome and mark the job completed."""

    def close(self) -> None:
        """Release connection resources."""


class RepositoryQueueClient:
    """Queue client over the ``query_jobs`` table."""

    def __init__(self, repository: JobRepository, *, worker_id: str) -> None:
        self.repository = repository
        self.worker_id = worker_id

    def claim_next(self) -> Job | None:
        try:
            return self.repository.claim_next(worker_id=self.worker_id)
        except SQLAlchemyError as error:
            raise InfrastructureError("claim_next", str(error)) from error

    def store_result(self, job_id: str, outcome: Outcome) -> None:
        try:
            self.repository.store_result(job_id=job_id, outcome=outcome)
        except SQLAlchemyError as error:
            raise InfrastructureError("store_result", str(error)) from error

    def close(self) -> None:
        self.repository.close()


class StoredProcedureQueueClient:
    """Queue client delegating atomicity to two stored procedures.

    The claim procedure returns at most one row ``(id, query)``; the store
    procedure takes ``@IdPeticion``, ``@ResultadoXml`` and ``@MensajeError``,
    one of the last two being NULL.
    """

    def __init__(
        self,
        database_url: str,
        *,
        claim_procedure: str,
        store_procedure: str,
        engine: Engine | None = None,
    ) -> None:
        for name in (claim_procedure, store_procedure):
            if not is_valid_procedure_name(name):
                raise ConfigurationError(f"Invalid stored procedure name: {name!r}")
        self.claim_procedure = claim_procedure
        self.store_procedure = store_procedure
        self.engine = engine or build_engine(database_url)

    def claim_next(self) -> Job | None:
        try:
            with self.engine.begin() as connection:
                row = connection.execute(text(f"EXEC {self.claim_procedure}")).first()
        except SQLAlchemyError as error:
            raise InfrastructureError("claim_next", str(error)) from error
        if row is None:
            return None
        return Job(job_id=str(row[0]), query_sql=str(row[1]))

    def store_result(self, job_id: str, outcome: Outcome) -> None:
        statement = text(
            f"EXEC {self.store_procedure} "
            "@IdPeticion = :job_id, @ResultadoXml = :result_xml, @MensajeError = :error_message",
        )
        try:
            with self.engine.begin() as connection:
                connection.execute(
                    statement,
                    {
                        "job_id": job_id,
                        "result_xml": outcome.document,
                        "error_message": outcome.error_message,
                    },
                )
        except SQLAlchemyError as error:
            raise InfrastructureError("store_result", str(error)) from error

    def close(self) -> None:
        self.engine.dispose()
