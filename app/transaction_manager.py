"""
Transaction Management
Tracks nesting depth over the shared connection. The outermost scope opens a
real transaction; inner scopes use savepoints named after their depth, so
commit and rollback always unwind in LIFO order.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple, Union

from connection_manager import ConnectionManager
from database_error_handler import (RecoveryStrategy, TransactionError, classify,
                                    describe_error, recovery_strategy_for)
from db_logging import get_logger
from query_cache import QueryCache
from query_executor import QueryExecutor

logger = get_logger(__name__)

SAVEPOINT_PREFIX = "sp_level_"

Statement = Union[Tuple[str, Any], Mapping[str, Any], str]


def savepoint_name(depth: int) -> str:
    return f"{SAVEPOINT_PREFIX}{depth}"


@dataclass
class TransactionState:
    """Open scopes on the shared connection"""
    depth: int = 0
    savepoints: List[str] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.depth > 0

    def reset(self):
        self.depth = 0
        self.savepoints.clear()


class TransactionCoordinator:
    """Nested transaction scopes backed by savepoints"""

    def __init__(self, connections: ConnectionManager, executor: QueryExecutor,
                 cache: QueryCache):
        self.connections = connections
        self.executor = executor
        self.cache = cache
        self.state = TransactionState()
        connections.add_reset_listener(self._on_connection_reset)

    @property
    def depth(self) -> int:
        return self.state.depth

    @property
    def in_transaction(self) -> bool:
        return self.state.active

    def begin(self):
        """Open a transaction, or a savepoint when one is already open"""
        if self.state.depth == 0:
            self._execute_control("BEGIN")
            logger.debug("Transaction started")
        else:
            name = savepoint_name(self.state.depth)
            self._execute_control(f"SAVEPOINT {name}")
            self.state.savepoints.append(name)
            logger.debug("Savepoint created", {"savepoint": name, "depth": self.state.depth})

        self.state.depth += 1

    def commit(self):
        """Close the innermost scope, committing when it is the outermost"""
        if self.state.depth == 0:
            raise TransactionError("No active transaction to commit")

        self.state.depth -= 1

        if self.state.depth == 0:
            self.state.savepoints.clear()
            try:
                self._execute_control("COMMIT")
            except TransactionError:
                # A failed COMMIT ends the transaction without its writes
                self.cache.clear()
                raise
            logger.debug("Transaction committed")
        else:
            name = self._pop_savepoint()
            self._execute_control(f"RELEASE SAVEPOINT {name}")
            logger.debug("Savepoint released", {"savepoint": name, "depth": self.state.depth})

    def rollback(self):
        """Undo the innermost scope; at the outermost, the whole transaction"""
        if self.state.depth == 0:
            raise TransactionError("No active transaction to rollback")

        self.state.depth -= 1
        # Cached reads may reflect writes that are being undone
        self.cache.clear()

        if self.state.depth == 0:
            self.state.savepoints.clear()
            self._execute_control("ROLLBACK")
            logger.info("Transaction rolled back")
        else:
            name = self._pop_savepoint()
            self._execute_control(f"ROLLBACK TO SAVEPOINT {name}")
            self._execute_control(f"RELEASE SAVEPOINT {name}")
            logger.info("Rolled back to savepoint", {"savepoint": name, "depth": self.state.depth})

    def _pop_savepoint(self) -> str:
        name = savepoint_name(self.state.depth)
        if name in self.state.savepoints:
            self.state.savepoints.remove(name)
        return name

    def _execute_control(self, statement: str):
        conn = self.connections.acquire()
        cursor = conn.cursor()
        try:
            try:
                cursor.execute(statement)
            finally:
                cursor.close()
        except Exception as e:
            logger.error(
                "Transaction control statement failed",
                {"statement": statement, "depth": self.state.depth, **describe_error(e)},
            )
            if recovery_strategy_for(classify(e)) is RecoveryStrategy.RECONNECT:
                logger.info("Connection lost during transaction control, discarding handle")
                self.connections.invalidate()
            raise TransactionError(f"{statement} failed: {e}") from e

    def _on_connection_reset(self):
        if self.state.active:
            logger.warning(
                "Connection replaced during an open transaction, nesting state reset",
                {"depth": self.state.depth, "savepoints": list(self.state.savepoints)},
            )
            # The server discarded the transaction; reads cached inside it are void
            self.cache.clear()
        self.state.reset()

    @contextmanager
    def transaction(self):
        """Scope that commits on normal exit and rolls back on any exception"""
        self.begin()
        try:
            yield self
        except BaseException:
            self._rollback_after_failure()
            raise
        self.commit()

    def _rollback_after_failure(self):
        if not self.state.active:
            return
        try:
            self.rollback()
        except TransactionError as rollback_error:
            logger.error("Failed to rollback transaction", {"error": str(rollback_error)})

    def run_as_transaction(self, statements: Iterable[Statement]) -> List[Dict[str, Any]]:
        """Execute ``statements`` atomically.

        Each statement is a ``(sql, params)`` tuple, a mapping with ``sql`` and
        optional ``params`` keys, or a bare SQL string. Returns one dict per
        statement with its ``rowcount``, ``last_insert_id`` and ``result``
        rows. Any failure rolls everything back and re-raises.
        """
        results: List[Dict[str, Any]] = []

        with self.transaction():
            for index, statement in enumerate(statements):
                sql, params = _unpack_statement(statement)
                try:
                    result = self.executor.execute(sql, params)
                except Exception:
                    logger.error(
                        "Transaction step failed, rolling back",
                        {"step": index, "completed_steps": len(results)},
                    )
                    raise
                results.append({
                    "rowcount": result.rowcount,
                    "last_insert_id": result.last_insert_id,
                    "result": result.rows,
                })

        logger.info("Transaction completed", {"steps": len(results)})
        return results


def _unpack_statement(statement: Statement) -> Tuple[str, Any]:
    if isinstance(statement, str):
        return statement, None
    if isinstance(statement, Mapping):
        if "sql" not in statement:
            raise TransactionError("Transaction step is missing its 'sql' key")
        return statement["sql"], statement.get("params")
    if isinstance(statement, Sequence) and len(statement) == 2:
        return statement[0], statement[1]
    raise TransactionError(f"Unsupported transaction step: {statement!r}")
