"""Safe execution of validated SQL against Postgres.

Every call:
- validates the text first (guardrails.validate_query),
- checks a connection out of a bounded pool (5 connections, callers beyond
  that block until one is free, for at most DB_POOL_WAIT_SECONDS; a caller
  still waiting then gets a DriverError rather than queueing forever),
- races the query against a 30 s timer in a worker thread,
- returns the connection on every exit path.

Results are normalized into a `QueryResult` regardless of the shape the
fetch callable hands back (list of rows, ``{"data": [...]}``, ``{"rows": [...]}``).
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from guardrails import (
    ConfigurationError,
    DriverError,
    QueryTimeoutError,
    QueryValidationError,
    validate_query,
)
from infra import sql_preview
from metrics import DB_LATENCY_SECONDS, QUERY_EXECUTIONS_TOTAL

logger = logging.getLogger("querylens.executor")

load_dotenv()

# ------------------------------------------------------------
# Knobs
# ------------------------------------------------------------
QUERY_TIMEOUT_SECONDS = 30
POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))
POOL_IDLE_SECONDS = int(os.getenv("DB_POOL_IDLE_SECONDS", "30"))
CONNECT_TIMEOUT_SECONDS = int(os.getenv("DB_CONNECT_TIMEOUT_SECONDS", "10"))
POOL_WAIT_SECONDS = int(os.getenv("DB_POOL_WAIT_SECONDS", "60"))


# ------------------------------------------------------------
# Result model + shape normalization
# ------------------------------------------------------------
@dataclass(frozen=True)
class QueryResult:
    rows: List[Dict[str, Any]]
    fields: List[Dict[str, str]]
    row_count: int
    execution_time_ms: int

    @classmethod
    def from_rows(cls, rows: List[Dict[str, Any]], execution_time_ms: int) -> "QueryResult":
        fields = [{"name": key} for key in rows[0].keys()] if rows else []
        return cls(rows=rows, fields=fields, row_count=len(rows), execution_time_ms=int(execution_time_ms))

    @property
    def field_names(self) -> List[str]:
        return [f["name"] for f in self.fields]


def _as_row(item: Any) -> Optional[Dict[str, Any]]:
    if isinstance(item, Mapping):
        return dict(item)
    mapping = getattr(item, "_mapping", None)  # SQLAlchemy Row
    if isinstance(mapping, Mapping):
        return dict(mapping)
    return None


def normalize_rows(raw: Any) -> List[Dict[str, Any]]:
    """Unwrap a bare row list, ``{"data": [...]}`` or ``{"rows": [...]}``; anything else is empty."""
    items: Any = None
    if isinstance(raw, (list, tuple)):
        items = raw
    elif isinstance(raw, Mapping):
        for key in ("data", "rows"):
            if isinstance(raw.get(key), (list, tuple)):
                items = raw[key]
                break
    if items is None:
        return []
    rows = []
    for item in items:
        row = _as_row(item)
        if row is not None:
            rows.append(row)
    return rows


# ------------------------------------------------------------
# Engine / pool
# ------------------------------------------------------------
def coerce_postgres_url(url: str) -> str:
    """postgres:// and postgresql:// -> postgresql+psycopg2:// (SQLAlchemy driver URL)."""
    url = (url or "").strip()
    scheme = (urlparse(url).scheme or "").lower()
    if scheme in ("postgres", "postgresql"):
        return "postgresql+psycopg2://" + url.split("://", 1)[1]
    return url


def build_engine(url: str) -> Engine:
    url = coerce_postgres_url(url)
    kwargs: Dict[str, Any] = {
        "pool_size": POOL_SIZE,
        "max_overflow": 0,               # hard cap: extra callers wait for a free connection
        "pool_timeout": POOL_WAIT_SECONDS,
        "pool_recycle": POOL_IDLE_SECONDS,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        kwargs["connect_args"] = {
            "connect_timeout": CONNECT_TIMEOUT_SECONDS,
            "application_name": "querylens",
        }
    elif url.startswith("sqlite"):
        # fetches run on a worker thread, not the thread that checked the connection out
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def _apply_timeout(conn, dialect: str, timeout_ms: int) -> None:
    """Best-effort server-side timeout, on top of the client-side race."""
    if dialect not in ("postgresql", "postgres"):
        return
    try:
        conn.exec_driver_sql(f"SET statement_timeout = {int(timeout_ms)}")
    except SQLAlchemyError as exc:
        logger.warning("statement_timeout_not_applied", extra={"error": str(exc)})


def _cancel(conn) -> None:
    """Stop a query that lost the race: cancel it on the server, then drop the connection.

    Only drivers exposing ``cancel()`` (psycopg2) interrupt the running statement;
    for the rest the worker thread keeps running until the driver call returns.
    """
    dbapi_conn = getattr(getattr(conn, "connection", None), "dbapi_connection", None)
    cancel = getattr(dbapi_conn, "cancel", None)
    if cancel is not None:
        try:
            cancel()
        except Exception as exc:  # noqa: BLE001 - driver-specific, cleanup only
            logger.debug("query_cancel_failed", extra={"error": str(exc)})
    try:
        conn.invalidate()
    except SQLAlchemyError as exc:
        logger.debug("connection_invalidate_failed", extra={"error": str(exc)})


def fetch_rows(conn, sql: str) -> List[Dict[str, Any]]:
    # no_parameters: the text goes to the driver verbatim ('%' and ':name' are not placeholders)
    res = conn.execution_options(no_parameters=True).exec_driver_sql(sql)
    if not res.returns_rows:
        return []
    return [dict(r) for r in res.mappings().all()]


# ------------------------------------------------------------
# Executor
# ------------------------------------------------------------
class QueryExecutor:
    """Runs validated SELECTs under a connection cap and a fixed wall-clock timeout."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        *,
        engine: Optional[Engine] = None,
        fetch: Callable[[Any, str], Any] = fetch_rows,
        timeout_s: float = QUERY_TIMEOUT_SECONDS,
    ) -> None:
        self._database_url = database_url
        self._engine = engine
        self._fetch = fetch
        self.timeout_s = timeout_s
        self._engine_lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            with self._engine_lock:
                if self._engine is None:
                    url = self._database_url or os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL")
                    if not url:
                        raise ConfigurationError("POSTGRES_URL environment variable is not set")
                    self._engine = build_engine(url)
        return self._engine

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()

    def execute(self, query: str) -> QueryResult:
        validation = validate_query(query)
        if not validation.is_valid:
            QUERY_EXECUTIONS_TOTAL.labels(status="rejected").inc()
            logger.warning("query_rejected", extra={"reason": validation.error, "sql": sql_preview(query)})
            raise QueryValidationError(validation.error or "Query rejected")

        try:
            engine = self.engine
        except ConfigurationError:
            QUERY_EXECUTIONS_TOTAL.labels(status="config_error").inc()
            logger.error("query_config_missing")
            raise

        sql = query.strip()
        try:
            result = self._run(engine, sql)
        except QueryTimeoutError:
            QUERY_EXECUTIONS_TOTAL.labels(status="timeout").inc()
            logger.warning("query_timeout", extra={"timeout_s": self.timeout_s, "sql": sql_preview(sql)})
            raise
        except DriverError as exc:
            QUERY_EXECUTIONS_TOTAL.labels(status="driver_error").inc()
            logger.warning("query_failed", extra={"error": str(exc), "sql": sql_preview(sql)})
            raise

        QUERY_EXECUTIONS_TOTAL.labels(status="ok").inc()
        DB_LATENCY_SECONDS.observe(result.execution_time_ms / 1000.0)
        logger.info(
            "query_executed",
            extra={
                "row_count": result.row_count,
                "field_count": len(result.fields),
                "db_ms": result.execution_time_ms,
                "sql": sql_preview(sql),
            },
        )
        return result

    def _run(self, engine: Engine, sql: str) -> QueryResult:
        try:
            conn = engine.connect()  # blocks while the pool is exhausted
        except PoolTimeoutError as exc:
            logger.warning("pool_wait_exceeded", extra={"wait_s": POOL_WAIT_SECONDS})
            raise DriverError(
                f"Query execution failed: no database connection became available within {POOL_WAIT_SECONDS}s"
            ) from exc
        except SQLAlchemyError as exc:
            raise DriverError(f"Query execution failed: {getattr(exc, 'orig', None) or exc}") from exc

        worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="querylens-sql")
        try:
            _apply_timeout(conn, engine.dialect.name, int(self.timeout_s * 1000))
            started = time.perf_counter()
            future = worker.submit(self._fetch, conn, sql)
            try:
                raw = future.result(timeout=self.timeout_s)
            except FutureTimeoutError:
                _cancel(conn)
                raise QueryTimeoutError(self.timeout_s) from None
            except Exception as exc:
                raise DriverError(f"Query execution failed: {getattr(exc, 'orig', None) or exc}") from exc
            elapsed_ms = int((time.perf_counter() - started) * 1000)
        finally:
            # A timed-out fetch thread is abandoned, not killed: it lives until the driver
            # returns, which after _cancel is prompt on Postgres but may be never elsewhere.
            worker.shutdown(wait=False)
            conn.close()

        return QueryResult.from_rows(normalize_rows(raw), elapsed_ms)


# ------------------------------------------------------------
# Process-wide executor (one long-lived pool)
# ------------------------------------------------------------
_default_executor: Optional[QueryExecutor] = None
_default_lock = threading.Lock()


def get_executor() -> QueryExecutor:
    global _default_executor
    if _default_executor is None:
        with _default_lock:
            if _default_executor is None:
                _default_executor = QueryExecutor()
    return _default_executor


def execute_query(sql: str) -> QueryResult:
    return get_executor().execute(sql)
