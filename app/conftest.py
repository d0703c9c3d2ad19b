# Ensure local modules in this folder are importable as top-level modules in tests
# This helps with `from database_manager import ...` and similar imports
# regardless of how pytest sets the rootdir or Python path.
import sqlite3
import sys
from pathlib import Path

HERE = Path(__file__).resolve().parent
if str(HERE) not in sys.path:
    sys.path.insert(0, str(HERE))

import pytest

from db_config import ConnectionConfig, DatabaseConfig


class FakeDriverError(Exception):
    """Stands in for a driver exception; classified by its message"""


class FakeCursor:
    """DB-API cursor double driven by its FakeConnection's script"""

    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self.rowcount = -1
        self.lastrowid = None
        self._rows = []

    def execute(self, sql, args=None):
        self.conn.executed.append((sql, args))
        if self.conn.closed:
            raise FakeDriverError("connection already closed")

        error = self.conn.pop_error(sql)
        if error is not None:
            raise error

        if sql == "SELECT 1":
            self.description = [("?column?",)]
            self._rows = [(self.conn.probe_value,)]
            return

        for fragment, result in self.conn.results.items():
            if fragment in sql:
                columns, rows, rowcount, lastrowid = result
                self.description = [(name,) for name in columns] if columns else None
                self._rows = list(rows)
                self.rowcount = rowcount if rowcount is not None else len(rows)
                self.lastrowid = lastrowid
                return

        self.rowcount = 0

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def close(self):
        pass


class FakeConnection:
    """Scriptable DB-API connection; records every statement it sees"""

    def __init__(self, backend_pid=1000):
        self.executed = []
        self.results = {}
        self.errors = []
        self.closed = False
        self.probe_value = 1
        self.backend_pid = backend_pid

    def script_result(self, fragment, columns=(), rows=(), rowcount=None, lastrowid=None):
        """Statements containing ``fragment`` return these rows"""
        self.results[fragment] = (list(columns), list(rows), rowcount, lastrowid)

    def script_error(self, fragment, error, times=None):
        """Statements containing ``fragment`` raise ``error`` (``times`` times, or forever)"""
        self.errors.append([fragment, error, times])

    def pop_error(self, sql):
        for entry in self.errors:
            fragment, error, times = entry
            if fragment in sql:
                if times is not None:
                    entry[2] -= 1
                    if entry[2] <= 0:
                        self.errors.remove(entry)
                return error
        return None

    def statements(self):
        return [sql for sql, _ in self.executed]

    def cursor(self):
        return FakeCursor(self)

    def get_backend_pid(self):
        return self.backend_pid

    def close(self):
        self.closed = True


class FakeConnector:
    """Connection factory that can be told to fail its next calls"""

    def __init__(self, failures=()):
        self.failures = list(failures)
        self.calls = 0
        self.connections = []

    def __call__(self, config):
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        conn = FakeConnection(backend_pid=1000 + self.calls)
        self.connections.append(conn)
        return conn

    @property
    def last(self):
        return self.connections[-1]


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)

    @property
    def total(self):
        return sum(self.calls)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper():
    return FakeSleep()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def connection_config():
    return ConnectionConfig(host="db.test", database="storefront_test",
                            username="app", password="s3cret")


@pytest.fixture
def db_config(connection_config, tmp_path):
    return DatabaseConfig(connection=connection_config, cache_capacity=10,
                          backup_dir=str(tmp_path / "backups"))


@pytest.fixture
def sqlite_connector():
    """Factory opening one shared in-memory SQLite database in autocommit mode"""
    conn = sqlite3.connect(":memory:", isolation_level=None, check_same_thread=False)
    conn.execute("""
        CREATE TABLE products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            price REAL,
            stock INTEGER DEFAULT 0,
            active INTEGER DEFAULT 1,
            created_at TEXT,
            updated_at TEXT,
            deleted_at TEXT
        )
    """)

    class _Shared:
        # close() from the manager must not drop the in-memory database
        def __init__(self, inner):
            self._inner = inner

        def cursor(self):
            return self._inner.cursor()

        def close(self):
            pass

    def connect(config):
        return _Shared(conn)

    connect.raw = conn
    yield connect
    conn.close()


@pytest.fixture
def sqlite_db(db_config, sqlite_connector, clock, sleeper):
    from database_manager import DatabaseManager

    manager = DatabaseManager(db_config, connect=sqlite_connector, clock=clock, sleep=sleeper)
    yield manager
    manager.close()
