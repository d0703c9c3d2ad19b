"""
Database Manager
Single entry point for the data-access layer. Wires the connection manager,
validator, result cache, executor, transaction coordinator and statistics
around one shared connection.
"""

import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

from connection_manager import ConnectionManager
from db_config import DatabaseConfig, load_config
from db_logging import get_logger
from db_maintenance import DatabaseMaintenance
from db_stats import StatsCollector
from query_cache import QueryCache
from query_executor import Params, QueryExecutor, QueryResult
from query_validator import QueryValidator
from transaction_manager import Statement, TransactionCoordinator

logger = get_logger(__name__)

CONNECTION_TEST_QUERY = "SELECT 1 AS test, CURRENT_TIMESTAMP AS server_time"


class DatabaseManager:
    """Query, transaction and diagnostic interface over one shared connection"""

    def __init__(self,
                 config: Optional[DatabaseConfig] = None,
                 connect: Optional[Callable] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or DatabaseConfig()

        self.connections = ConnectionManager(
            self.config.connection,
            connect=connect,
            health_check_interval=self.config.health_check_interval,
            clock=clock,
            sleep=sleep,
        )
        self.validator = QueryValidator()
        self.cache = QueryCache(self.config.cache_capacity)
        self.stats = StatsCollector()
        self.executor = QueryExecutor(
            self.connections,
            self.validator,
            self.cache,
            self.stats,
            slow_query_threshold_ms=self.config.slow_query_threshold_ms,
            sleep=sleep,
        )
        self.transactions = TransactionCoordinator(self.connections, self.executor, self.cache)
        self.maintenance = DatabaseMaintenance(self, backup_dir=self.config.backup_dir)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # Connection

    def acquire_connection(self):
        """Live DB-API connection; prefer the query helpers"""
        return self.connections.acquire()

    # Queries

    def execute(self, sql: str, params: Params = None, use_cache: bool = True) -> QueryResult:
        return self.executor.execute(sql, params, use_cache=use_cache)

    def fetch_all(self, sql: str, params: Params = None, use_cache: bool = True) -> List[dict]:
        return self.execute(sql, params, use_cache=use_cache).fetchall()

    def fetch_one(self, sql: str, params: Params = None, use_cache: bool = True) -> Optional[dict]:
        return self.execute(sql, params, use_cache=use_cache).fetchone()

    def fetch_scalar(self, sql: str, params: Params = None, use_cache: bool = True) -> Any:
        return self.execute(sql, params, use_cache=use_cache).fetchscalar()

    def last_insert_id(self) -> Any:
        """Id generated by the most recent successful write"""
        return self.executor.last_insert_id

    def execute_with_retry(self, sql: str, params: Params = None,
                           max_retries: Optional[int] = None) -> QueryResult:
        if max_retries is None:
            max_retries = self.config.deadlock_retries
        return self.executor.execute_with_retry(sql, params, max_retries)

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return self.transactions.in_transaction

    @property
    def transaction_depth(self) -> int:
        return self.transactions.depth

    def begin_transaction(self):
        self.transactions.begin()

    def commit(self):
        self.transactions.commit()

    def rollback(self):
        self.transactions.rollback()

    @contextmanager
    def transaction(self):
        with self.transactions.transaction():
            yield self

    def run_as_transaction(self, statements: Iterable[Statement]) -> List[Dict[str, Any]]:
        return self.transactions.run_as_transaction(statements)

    # Diagnostics

    def test_connection(self) -> bool:
        """Round-trip probe; failures are logged and reported as False"""
        try:
            row = self.fetch_one(CONNECTION_TEST_QUERY, use_cache=False)
        except Exception as e:
            logger.error("Database connection test failed", {"error": str(e)})
            return False

        if row and row.get("test") == 1:
            logger.info(
                "Database connection test successful",
                {"server_time": row.get("server_time")},
            )
            return True
        return False

    def get_connection_stats(self) -> Dict[str, Any]:
        """Query counters with derived ratios, plus connection and cache state"""
        stats: Dict[str, Any] = self.stats.snapshot()
        stats["connection"] = {
            "connected": self.connections.is_connected,
            "connection_attempts": self.connections.attempts,
            **self.connections.stats,
        }
        stats["cached_queries"] = len(self.cache)
        stats["transaction_depth"] = self.transactions.depth
        return stats

    def clear_cache(self) -> int:
        """Empty the result cache; returns how many entries were dropped"""
        cleared = self.cache.clear()
        logger.info("Query cache cleared", {"cached_queries": cleared})
        return cleared

    def get_database_info(self) -> Optional[Dict[str, Any]]:
        return self.maintenance.get_database_info()

    def close(self):
        """Log final statistics and release the physical connection"""
        stats = self.stats.snapshot()
        if stats["queries_executed"] > 0:
            logger.info("Database connection closing", {"final_stats": stats})

        if self.transactions.in_transaction:
            logger.warning(
                "Closing database connection with an open transaction",
                {"depth": self.transactions.depth},
            )
            self.transactions.state.reset()

        self.connections.close()


# Default instance for callers that do not inject one
_database: Optional[DatabaseManager] = None
_database_lock = threading.Lock()


def get_database() -> DatabaseManager:
    """Shared manager built from the environment, created on first use"""
    global _database
    if _database is None:
        with _database_lock:
            if _database is None:
                _database = DatabaseManager(load_config())
    return _database


def close_database():
    global _database
    with _database_lock:
        if _database is not None:
            _database.close()
            _database = None
