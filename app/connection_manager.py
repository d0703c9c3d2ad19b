"""
Database Connection Manager
Owns the single physical connection: establishes it with bounded retries and
exponential backoff, probes it periodically, and replaces it when it dies.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import psycopg2

from database_error_handler import (ConnectionFatalError, ErrorCategory,
                                    classify, describe_error)
from db_config import ConnectionConfig
from db_logging import get_logger

logger = get_logger(__name__)

HEALTH_CHECK_QUERY = "SELECT 1"


def psycopg2_connect(config: ConnectionConfig):
    """Open an autocommit psycopg2 connection configured for this layer"""
    conn = psycopg2.connect(
        host=config.host,
        port=config.port,
        dbname=config.database,
        user=config.username,
        password=config.password,
        connect_timeout=config.connect_timeout,
        application_name=config.application_name,
        client_encoding=config.charset,
    )
    # Transaction boundaries are issued explicitly by the coordinator
    conn.autocommit = True
    with conn.cursor() as cursor:
        cursor.execute("SET TIME ZONE 'UTC'")
    return conn


@dataclass
class HealthState:
    last_checked_at: float = 0.0
    check_interval_seconds: float = 300.0

    def is_due(self, now: float) -> bool:
        return (now - self.last_checked_at) > self.check_interval_seconds


class ConnectionManager:
    """Lazily creates, health-checks and heals the shared connection"""

    def __init__(self,
                 config: ConnectionConfig,
                 connect: Optional[Callable[[ConnectionConfig], Any]] = None,
                 health_check_interval: float = 300.0,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._connect = connect or psycopg2_connect
        self._clock = clock
        self._sleep = sleep
        self._connection = None
        self._lock = threading.RLock()
        self._reset_listeners: List[Callable[[], None]] = []
        self.health = HealthState(check_interval_seconds=health_check_interval)
        self.attempts = 0
        self.stats: Dict[str, int] = {
            "connections_established": 0,
            "reconnects": 0,
            "health_checks": 0,
            "health_check_failures": 0,
            "connection_errors": 0,
        }

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def add_reset_listener(self, callback: Callable[[], None]):
        """Register a callback run whenever the physical connection is replaced"""
        self._reset_listeners.append(callback)

    def acquire(self):
        """Return a live connection, establishing or healing it as needed"""
        conn = self._connection
        if conn is None:
            with self._lock:
                if self._connection is None:
                    self._establish()
                conn = self._connection

        if self.health.is_due(self._clock()):
            with self._lock:
                if self.health.is_due(self._clock()):
                    conn = self._perform_health_check()
                else:
                    conn = self._connection

        return conn

    def _establish(self):
        """Connect with up to ``max_attempts`` tries and exponential backoff"""
        max_attempts = self.config.max_attempts
        self.attempts = 0
        last_error: Optional[BaseException] = None

        while self.attempts < max_attempts:
            self.attempts += 1
            conn = None
            try:
                conn = self._connect(self.config)
                if not self._probe(conn):
                    raise ConnectionError("Connection verification query returned an unexpected result")
            except Exception as e:
                last_error = e
                self._close_quietly(conn)
                self._handle_connection_error(e)

                if self.attempts < max_attempts:
                    wait_time = 2 ** (self.attempts - 1)
                    logger.info(
                        f"Retrying database connection in {wait_time}s",
                        {"attempt": self.attempts, "max_attempts": max_attempts},
                    )
                    self._sleep(wait_time)
                continue

            self._connection = conn
            self.health.last_checked_at = self._clock()
            self.stats["connections_established"] += 1

            logger.info(
                "Database connection established successfully",
                {
                    **self.config.describe(),
                    "attempt": self.attempts,
                    "connection_id": self.connection_id(conn),
                },
            )
            return conn

        error_message = f"Failed to establish database connection after {max_attempts} attempts"
        logger.critical(error_message, self.config.describe())
        raise ConnectionFatalError(
            error_message,
            attempts=self.attempts,
            category=classify(last_error) if last_error is not None else ErrorCategory.UNKNOWN,
        ) from last_error

    def _handle_connection_error(self, error: Exception):
        """Log a failed connection attempt with its classification"""
        self.stats["connection_errors"] += 1
        details = describe_error(error)

        logger.error(
            "Database connection attempt failed",
            {
                "attempt": self.attempts,
                "max_attempts": self.config.max_attempts,
                **details,
                "host": self.config.host,
                "database": self.config.database,
            },
        )

        if details["error_type"] == ErrorCategory.AUTHENTICATION.value:
            logger.security(
                "Database authentication failure",
                {"host": self.config.host, "username": self.config.username},
            )

    def _probe(self, conn) -> bool:
        cursor = conn.cursor()
        try:
            cursor.execute(HEALTH_CHECK_QUERY)
            row = cursor.fetchone()
        finally:
            cursor.close()
        return row is not None and row[0] == 1

    def _perform_health_check(self):
        """Probe the current connection; re-establish it if the probe fails"""
        conn = self._connection
        self.stats["health_checks"] += 1
        start_time = time.perf_counter()

        try:
            healthy = conn is not None and self._probe(conn)
        except Exception as e:
            self.stats["health_check_failures"] += 1
            logger.warning(
                "Database health check failed with exception, reconnecting...",
                {"error": str(e), "error_type": classify(e).value},
            )
            return self.reconnect()

        if healthy:
            self.health.last_checked_at = self._clock()
            logger.debug(
                "Database health check passed",
                {
                    "response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "connection_id": self.connection_id(conn),
                },
            )
            return conn

        self.stats["health_check_failures"] += 1
        logger.warning("Database health check failed, reconnecting...")
        return self.reconnect()

    def reconnect(self):
        """Discard the current handle and establish a fresh one"""
        with self._lock:
            self._discard()
            self.stats["reconnects"] += 1
            try:
                return self._establish()
            finally:
                self._notify_reset()

    def invalidate(self):
        """Drop the current handle; the next acquire() re-establishes"""
        with self._lock:
            if self._discard():
                self._notify_reset()

    def close(self):
        with self._lock:
            if self._discard():
                logger.info("Database connection closed", self.config.describe())

    def _discard(self) -> bool:
        conn, self._connection = self._connection, None
        if conn is None:
            return False
        self._close_quietly(conn)
        return True

    def _close_quietly(self, conn):
        if conn is None:
            return
        try:
            conn.close()
        except Exception as e:
            logger.debug("Ignoring error while closing stale connection", {"error": str(e)})

    def _notify_reset(self):
        for callback in list(self._reset_listeners):
            callback()

    def connection_id(self, conn=None) -> Optional[int]:
        """Server-side id of the connection, when the driver exposes one"""
        conn = conn if conn is not None else self._connection
        get_backend_pid = getattr(conn, "get_backend_pid", None)
        if get_backend_pid is None:
            return None
        try:
            return get_backend_pid()
        except Exception:
            return None
