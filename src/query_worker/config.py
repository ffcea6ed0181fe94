"""Runtime configuration for the query worker pool."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from query_worker.engine.errors import ConfigurationError

QUEUE_BACKENDS = ("table", "procedure")

_PROCEDURE_PART = r"(\[[^\]]+\]|[A-Za-z_][A-Za-z0-9_]*)"
_PROCEDURE_NAME = re.compile(rf"^{_PROCEDURE_PART}(\.{_PROCEDURE_PART})*$")


@dataclass(slots=True)
class WorkerSettings:
    """Worker pool sizing, backoff and query limits."""

    worker_count: int = 2
    idle_backoff_ms: int = 1_000
    fault_backoff_ms: int = 5_000
    query_timeout_seconds: int = 300
    commit_user_queries: bool = True


@dataclass(slots=True)
class QueueSettings:
    """Queue transport selection."""

    backend: str = "table"
    claim_procedure: str = "dbo.usp_ObtenerSiguientePeticion"
    store_procedure: str = "dbo.usp_GuardarRespuesta"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    database_url: str | None = None
    query_database_url: str | None = None
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Settings:
        """Load settings from environment; ``database_url`` overrides the env value."""

        return cls(
            database_url=database_url or _env_str("QUERY_WORKER_DATABASE_URL"),
            query_database_url=_env_str("QUERY_WORKER_QUERY_DATABASE_URL"),
            sqlite_busy_timeout_ms=_env_int("QUERY_WORKER_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            worker=WorkerSettings(
                worker_count=_env_int("QUERY_WORKER_WORKER_COUNT", 2),
                idle_backoff_ms=_env_int("QUERY_WORKER_IDLE_BACKOFF_MS", 1_000),
                fault_backoff_ms=_env_int("QUERY_WORKER_FAULT_BACKOFF_MS", 5_000),
                query_timeout_seconds=_env_int("QUERY_WORKER_QUERY_TIMEOUT_SECONDS", 300),
                commit_user_queries=_env_bool("QUERY_WORKER_COMMIT_USER_QUERIES", default=True),
            ),
            queue=QueueSettings(
                backend=os.getenv("QUERY_WORKER_QUEUE_BACKEND", "table").strip().lower(),
                claim_procedure=os.getenv(
                    "QUERY_WORKER_CLAIM_PROCEDURE",
                    "dbo.usp_ObtenerSiguientePeticion",
                ).strip(),
                store_procedure=os.getenv(
                    "QUERY_WORKER_STORE_PROCEDURE",
                    "dbo.usp_GuardarRespuesta",
                ).strip(),
            ),
        )

    @property
    def effective_query_database_url(self) -> str:
        return self.query_database_url or self.require_database_url()

    def require_database_url(self) -> str:
        if not self.database_url:
            raise ConfigurationError(
                "A database connection is required. "
                "Set QUERY_WORKER_DATABASE_URL or pass --database-url.",
            )
        return self.database_url

    def validate(self) -> None:
        """Raise ``ConfigurationError`` for missing or out-of-range settings."""

        self.require_database_url()
        if self.worker.worker_count < 1:
            raise ConfigurationError("QUERY_WORKER_WORKER_COUNT must be >= 1.")
        if self.worker.idle_backoff_ms < 0:
            raise ConfigurationError("QUERY_WORKER_IDLE_BACKOFF_MS must be >= 0.")
        if self.worker.fault_backoff_ms < 0:
            raise ConfigurationError("QUERY_WORKER_FAULT_BACKOFF_MS must be >= 0.")
        if self.worker.query_timeout_seconds < 1:
            raise ConfigurationError("QUERY_WORKER_QUERY_TIMEOUT_SECONDS must be >= 1.")
        if self.sqlite_busy_timeout_ms < 1:
            raise ConfigurationError("QUERY_WORKER_SQLITE_BUSY_TIMEOUT_MS must be >= 1.")
        if self.queue.backend not in QUEUE_BACKENDS:
            raise ConfigurationError(
                f"Invalid QUERY_WORKER_QUEUE_BACKEND: {self.queue.backend!r}. "
                f"Expected one of: {', '.join(QUEUE_BACKENDS)}.",
            )
        if self.queue.backend == "procedure" and not (
            self.queue.claim_procedure and self.queue.store_procedure
        ):
            raise ConfigurationError(
                "QUERY_WORKER_CLAIM_PROCEDURE and QUERY_WORKER_STORE_PROCEDURE "
                "must be set for the procedure queue backend.",
            )
        if self.queue.backend == "procedure":
            for variable, name in (
                ("QUERY_WORKER_CLAIM_PROCEDURE", self.queue.claim_procedure),
                ("QUERY_WORKER_STORE_PROCEDURE", self.queue.store_procedure),
            ):
                if not is_valid_procedure_name(name):
                    raise ConfigurationError(f"Invalid {variable}: {name!r}.")


def _env_str(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")


def is_valid_procedure_name(name: str) -> bool:
    """Check a stored procedure name: dotted identifiers, optionally bracketed."""

    return bool(_PROCEDURE_NAME.match(name))
