"""Error taxonomy used by the worker retry policy."""

from __future__ import annotations


class QueryWorkerError(Exception):
    """Base class for all query-worker errors."""


class ConfigurationError(QueryWorkerError, ValueError):
    """Invalid or missing runtime settings."""


class InfrastructureError(QueryWorkerError):
    """Queue store failure not attributable to a job's content."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class UserQueryError(QueryWorkerError):
    """The submitted query failed to parse or execute.

    ``str(error)`` is the backend message verbatim; it becomes the persisted
    failure text of the job.
    """


class ResultEncodingError(UserQueryError):
    """Result values cannot be represented in the result document."""


class JobNotFoundError(QueryWorkerError, LookupError):
    """Requested job id does not exist in the store."""
