"""
Query Executor
Validates, binds, caches and executes statements against the shared
connection, recording timing and routing failures through the classifier.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from connection_manager import ConnectionManager
from database_error_handler import (QueryExecutionError, RecoveryStrategy,
                                    classify, describe_error,
                                    recovery_strategy_for)
from db_logging import get_logger, sanitize_params
from db_stats import StatsCollector
from parameter_binding import BoundParameters, bind_parameters
from query_cache import (QueryCache, fingerprint, is_read_only, tables_read,
                         tables_written)
from query_validator import QueryValidator

logger = get_logger(__name__)

Params = Optional[Union[Sequence[Any], Mapping[str, Any]]]

_RETURNING = "RETURNING"


@dataclass
class QueryResult:
    """Materialized result of one statement"""
    rows: List[dict] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    rowcount: int = -1
    last_insert_id: Any = None
    from_cache: bool = False
    execution_time_ms: float = 0.0

    def __post_init__(self):
        self._cursor = 0

    def fetchall(self) -> List[dict]:
        rows = self.rows[self._cursor:]
        self._cursor = len(self.rows)
        return rows

    def fetchone(self) -> Optional[dict]:
        if self._cursor >= len(self.rows):
            return None
        row = self.rows[self._cursor]
        self._cursor += 1
        return row

    def fetchscalar(self) -> Any:
        """First column of the next row (None when exhausted)"""
        row = self.fetchone()
        if row is None or not self.columns:
            return None
        return row[self.columns[0]]

    @classmethod
    def from_cursor(cls, cursor, sql: str) -> "QueryResult":
        rows: List[dict] = []
        columns: List[str] = []

        if cursor.description is not None:
            columns = [column[0] for column in cursor.description]
            rows = [dict(zip(columns, record)) for record in cursor.fetchall()]

        last_insert_id = None
        if not is_read_only(sql):
            if rows and columns and _RETURNING in sql.upper():
                last_insert_id = rows[0][columns[0]]
            else:
                last_insert_id = getattr(cursor, "lastrowid", None) or None

        rowcount = getattr(cursor, "rowcount", -1)
        return cls(rows=rows, columns=columns,
                   rowcount=rowcount if rowcount is not None else -1,
                   last_insert_id=last_insert_id)


class QueryExecutor:
    """Runs statements for the manager; never retries on its own"""

    def __init__(self,
                 connections: ConnectionManager,
                 validator: QueryValidator,
                 cache: QueryCache,
                 stats: StatsCollector,
                 slow_query_threshold_ms: float = 1000.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.connections = connections
        self.validator = validator
        self.cache = cache
        self.stats = stats
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self._sleep = sleep
        self.last_insert_id: Any = None

    def execute(self, sql: str, params: Params = None, use_cache: bool = True) -> QueryResult:
        """Execute ``sql`` and return a materialized result"""
        self.validator.validate(sql)

        bound = bind_parameters(params)
        read_only = is_read_only(sql)
        cache_key = fingerprint(sql, bound) if read_only and use_cache else None

        if cache_key is not None:
            entry = self.cache.get(cache_key)
            if entry is not None:
                self.stats.record_cache_hit()
                logger.debug("Query cache hit", {"cache_key": cache_key})
                return QueryResult(rows=entry.snapshot, columns=entry.columns,
                                   rowcount=len(entry.snapshot), from_cache=True)

        conn = self.connections.acquire()

        logger.debug(
            "Executing database query",
            {"sql": sql, "params": sanitize_params(bound.raw()), "cache_key": cache_key},
        )

        start_time = time.perf_counter()
        try:
            result = self._run(conn, sql, bound)
        except Exception as e:
            self._handle_query_error(e, sql, bound, start_time)
            raise QueryExecutionError(
                f"Database query failed: {e}", category=classify(e), sql=sql
            ) from e

        execution_time = (time.perf_counter() - start_time) * 1000
        result.execution_time_ms = execution_time
        self.stats.record_query(execution_time)

        if read_only:
            if cache_key is not None:
                self.cache.put(cache_key, result.rows, result.columns, tables_read(sql))
                self.stats.record_cache_miss()
        else:
            written = tables_written(sql)
            if written:
                invalidated = self.cache.invalidate_tables(written)
                if invalidated:
                    logger.debug(
                        "Invalidated cached queries after write",
                        {"tables": sorted(written), "entries": invalidated},
                    )
            if result.last_insert_id is not None:
                self.last_insert_id = result.last_insert_id

        if execution_time > self.slow_query_threshold_ms:
            logger.warning(
                "Slow query detected",
                {
                    "sql": sql,
                    "execution_time_ms": round(execution_time, 2),
                    "params_count": len(bound),
                },
            )

        return result

    def _run(self, conn, sql: str, bound: BoundParameters) -> QueryResult:
        cursor = conn.cursor()
        try:
            args = bound.as_driver_args()
            if args is None:
                cursor.execute(sql)
            else:
                cursor.execute(sql, args)
            return QueryResult.from_cursor(cursor, sql)
        finally:
            cursor.close()

    def _handle_query_error(self, error: Exception, sql: str,
                            bound: BoundParameters, start_time: float):
        """Count, classify and log a failed statement; drop the handle if the link died"""
        self.stats.record_failure()
        details = describe_error(error)
        category = classify(error)

        logger.error(
            "Database query execution failed",
            {
                "sql": sql,
                "params": sanitize_params(bound.raw()),
                "execution_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
                **details,
            },
        )

        if recovery_strategy_for(category) is RecoveryStrategy.RECONNECT:
            logger.info("Connection lost, discarding handle; next query reconnects")
            self.connections.invalidate()

    def execute_with_retry(self, sql: str, params: Params = None,
                           max_retries: int = 3) -> QueryResult:
        """Execute, retrying only deadlock failures with growing backoff.

        Waits 2^n * 100ms between attempts (n = 0, 1, ...).
        """
        attempt = 0
        while True:
            try:
                return self.execute(sql, params)
            except QueryExecutionError as e:
                attempt += 1
                if recovery_strategy_for(e.category) is not RecoveryStrategy.RETRY \
                        or attempt >= max_retries:
                    raise

                delay = (2 ** (attempt - 1)) * 0.1
                logger.warning(
                    "Deadlock detected, retrying query",
                    {
                        "attempt": attempt,
                        "max_retries": max_retries,
                        "delay_seconds": delay,
                        "sql": sql,
                    },
                )
                self._sleep(delay)
