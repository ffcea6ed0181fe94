"""Execution of opaque user queries against the relational backend."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol

from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from query_worker.engine.encoder import stringify_value
from query_worker.engine.errors import UserQueryError
from query_worker.engine.models import TabularResult
from query_worker.storage.common import build_engine

logger = logging.getLogger(__name__)


class QueryExecutor(Protocol):
    """Protocol implemented by user query runners."""

    def execute(self, query_sql: str, timeout_seconds: int) -> TabularResult:
        """Run *query_sql* and return its first result set.

        Raises ``UserQueryError`` with the backend message when the query
        cannot be parsed or executed.
        """

    def close(self) -> None:
        """Release connection resources."""


class SqlAlchemyQueryExecutor:
    """Runs user queries on a dedicated SQLAlchemy engine.

    Each execution checks out its own DB-API connection. Batches and stored
    procedures may produce several results: row counts are skipped and the
    first result that has columns is read. Statements that return no rows
    at all yield an empty ``TabularResult``.
    """

    def __init__(
        self,
        database_url: str,
        *,
        commit: bool = True,
        sqlite_busy_timeout_ms: int = 5_000,
        engine: Engine | None = None,
    ) -> None:
        self.database_url = database_url
        self.commit = commit
        self.engine = engine or build_engine(
            database_url,
            sqlite_busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        self.engine.dispose()

    def execute(self, query_sql: str, timeout_seconds: int) -> TabularResult:
        dbapi = self.engine.dialect.loaded_dbapi
        try:
            connection = self.engine.raw_connection()
        except DBAPIError as error:
            raise UserQueryError(_driver_message(error.orig, fallback=error)) from error
        except SQLAlchemyError as error:
            raise UserQueryError(str(error)) from error

        try:
            with _deadline(connection.dbapi_connection, timeout_seconds):
                cursor = connection.cursor()
                try:
                    cursor.execute(query_sql)
                    tabular = _first_row_set(cursor, not_supported=dbapi.NotSupportedError)
                finally:
                    cursor.close()
            if self.commit:
                connection.commit()
            else:
                connection.rollback()
            return tabular
        except dbapi.Error as error:
            _rollback_quietly(connection)
            raise UserQueryError(_driver_message(error)) from error
        finally:
            connection.close()


def _first_row_set(cursor: Any, *, not_supported: type[Exception]) -> TabularResult:
    while cursor.description is None:
        next_set = getattr(cursor, "nextset", None)
        if next_set is None:
            return TabularResult()
        try:
            if not next_set():
                return TabularResult()
        except not_supported:
            return TabularResult()

    columns = [str(column[0]) for column in cursor.description]
    return TabularResult.from_rows(
        columns,
        [tuple(stringify_value(value) for value in row) for row in cursor.fetchall()],
    )


def _driver_message(
    original: BaseException | None,
    *,
    fallback: BaseException | None = None,
) -> str:
    if original is None:
        return str(fallback)
    # pyodbc and pymysql carry (code, message) in args
    args = getattr(original, "args", ())
    if len(args) >= 2 and isinstance(args[1], str):
        return args[1]
    return str(original)


def _rollback_quietly(connection: Any) -> None:
    try:
        connection.rollback()
    except Exception:  # noqa: BLE001
        logger.debug("Rollback after failed user query failed", exc_info=True)


@contextmanager
def _deadline(dbapi_connection: Any, timeout_seconds: int) -> Iterator[None]:
    """Bound a statement by *timeout_seconds* using what the DB-API driver offers."""

    if dbapi_connection is not None and hasattr(dbapi_connection, "timeout"):
        try:
            dbapi_connection.timeout = timeout_seconds
        except (AttributeError, TypeError):
            logger.debug("Driver rejected native query timeout", exc_info=True)

    cancel = _cancel_hook(dbapi_connection)
    if cancel is None or timeout_seconds <= 0:
        yield
        return

    timer = threading.Timer(timeout_seconds, _cancel_quietly, args=(cancel,))
    timer.daemon = True
    timer.start()
    try:
        yield
    finally:
        timer.cancel()


def _cancel_hook(dbapi_connection: Any) -> Any:
    for name in ("interrupt", "cancel"):
        hook = getattr(dbapi_connection, name, None)
        if callable(hook):
            return hook
    return None


def _cancel_quietly(cancel: Any) -> None:
    logger.warning("Query exceeded its timeout, cancelling")
    try:
        cancel()
    except Exception:  # noqa: BLE001
        logger.debug("Query cancel hook failed", exc_info=True)
