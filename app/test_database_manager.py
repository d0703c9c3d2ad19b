"""
End-to-end tests for the database manager against an in-memory SQLite
database standing in for the server.
"""

import logging

import pytest
import database_manager
from database_error_handler import (ErrorCategory, QueryExecutionError,
                                    QueryValidationError)
from database_manager import DatabaseManager, close_database, get_database

INSERT_PRODUCT = "INSERT INTO products (name, price, stock) VALUES (?, ?, ?)"
COUNT_PRODUCTS = "SELECT COUNT(*) AS total FROM products"


def count_products(db):
    return db.fetch_scalar(COUNT_PRODUCTS, use_cache=False)


class TestRoundTrip:
    @pytest.mark.parametrize("name, price, stock", [
        ("widget", 9.99, 5),
        ("gadget with 'quotes'", 0.5, 0),
        ("ünïcødé", 1200.0, 12),
    ])
    def test_inserted_row_reads_back(self, sqlite_db, name, price, stock):
        sqlite_db.execute(INSERT_PRODUCT, [name, price, stock])
        product_id = sqlite_db.last_insert_id()

        row = sqlite_db.fetch_one("SELECT * FROM products WHERE id = ?", [product_id])

        assert row["name"] == name
        assert row["price"] == price
        assert row["stock"] == stock

    def test_named_parameters(self, sqlite_db):
        sqlite_db.execute(
            "INSERT INTO products (name, stock) VALUES (:name, :stock)",
            {"name": "named", "stock": 3},
        )

        assert sqlite_db.fetch_scalar(
            "SELECT stock FROM products WHERE name = :name", {"name": "named"}
        ) == 3

    def test_fetch_all_and_missing_row(self, sqlite_db):
        sqlite_db.execute(INSERT_PRODUCT, ["a", 1.0, 1])
        sqlite_db.execute(INSERT_PRODUCT, ["b", 2.0, 2])

        rows = sqlite_db.fetch_all("SELECT name FROM products ORDER BY name")

        assert rows == [{"name": "a"}, {"name": "b"}]
        assert sqlite_db.fetch_one("SELECT * FROM products WHERE id = ?", [999]) is None


class TestCaching:
    def test_identical_reads_hit_cache(self, sqlite_db):
        sqlite_db.execute(INSERT_PRODUCT, ["widget", 9.99, 5])

        first = sqlite_db.fetch_all("SELECT * FROM products WHERE stock > ?", [0])
        second = sqlite_db.fetch_all("SELECT * FROM products WHERE stock > ?", [0])

        assert first == second
        stats = sqlite_db.get_connection_stats()
        assert stats["cache_hits"] == 1
        assert stats["cache_misses"] == 1
        assert stats["cache_hit_ratio"] == 50.0

    def test_writes_invalidate_cached_reads(self, sqlite_db):
        sqlite_db.execute(INSERT_PRODUCT, ["widget", 9.99, 5])
        assert sqlite_db.fetch_scalar(COUNT_PRODUCTS) == 1

        sqlite_db.execute(INSERT_PRODUCT, ["gadget", 1.0, 1])

        assert sqlite_db.fetch_scalar(COUNT_PRODUCTS) == 2

    def test_clear_cache(self, sqlite_db):
        sqlite_db.fetch_all("SELECT * FROM products")
        sqlite_db.fetch_all("SELECT name FROM products")

        assert sqlite_db.clear_cache() == 2
        assert sqlite_db.get_connection_stats()["cached_queries"] == 0


class TestTransactions:
    def test_failed_step_leaves_no_partial_writes(self, sqlite_db):
        sqlite_db.execute(INSERT_PRODUCT, ["existing", 1.0, 1])
        before = count_products(sqlite_db)

        with pytest.raises(QueryExecutionError) as excinfo:
            sqlite_db.run_as_transaction([
                (INSERT_PRODUCT, ["new-1", 1.0, 1]),
                (INSERT_PRODUCT, ["new-2", 1.0, 1]),
                (INSERT_PRODUCT, ["existing", 1.0, 1]),
            ])

        assert excinfo.value.category is ErrorCategory.DUPLICATE_ENTRY
        assert count_products(sqlite_db) == before
        assert sqlite_db.transaction_depth == 0

    def test_successful_run_commits_everything(self, sqlite_db):
        results = sqlite_db.run_as_transaction([
            (INSERT_PRODUCT, ["one", 1.0, 1]),
            {"sql": INSERT_PRODUCT, "params": ["two", 2.0, 2]},
        ])

        assert [r["rowcount"] for r in results] == [1, 1]
        assert [r["last_insert_id"] for r in results] == [1, 2]
        assert count_products(sqlite_db) == 2

    def test_nested_commit_then_rollback_undoes_outer_scope(self, sqlite_db):
        sqlite_db.begin_transaction()
        sqlite_db.execute(INSERT_PRODUCT, ["outer", 1.0, 1])
        sqlite_db.begin_transaction()
        sqlite_db.execute(INSERT_PRODUCT, ["inner", 1.0, 1])
        sqlite_db.commit()
        sqlite_db.rollback()

        assert sqlite_db.transaction_depth == 0
        assert count_products(sqlite_db) == 0

    def test_nested_commits_persist_all_writes(self, sqlite_db):
        sqlite_db.begin_transaction()
        sqlite_db.execute(INSERT_PRODUCT, ["outer", 1.0, 1])
        sqlite_db.begin_transaction()
        sqlite_db.execute(INSERT_PRODUCT, ["inner", 1.0, 1])
        sqlite_db.commit()
        sqlite_db.commit()

        assert sqlite_db.transaction_depth == 0
        assert count_products(sqlite_db) == 2

    def test_inner_rollback_keeps_outer_writes(self, sqlite_db):
        with sqlite_db.transaction():
            sqlite_db.execute(INSERT_PRODUCT, ["kept", 1.0, 1])
            with pytest.raises(RuntimeError):
                with sqlite_db.transaction():
                    sqlite_db.execute(INSERT_PRODUCT, ["discarded", 1.0, 1])
                    raise RuntimeError("inner failure")

        names = [row["name"] for row in sqlite_db.fetch_all("SELECT name FROM products", use_cache=False)]
        assert names == ["kept"]


class TestDiagnostics:
    def test_test_connection(self, sqlite_db):
        assert sqlite_db.test_connection() is True

    def test_test_connection_reports_failure(self, db_config, clock, sleeper):
        def refuse(config):
            raise ConnectionRefusedError("Connection refused")

        db = DatabaseManager(db_config, connect=refuse, clock=clock, sleep=sleeper)

        assert db.test_connection() is False
        assert sleeper.calls == [1, 2]

    def test_connection_stats(self, sqlite_db):
        sqlite_db.execute(INSERT_PRODUCT, ["widget", 9.99, 5])
        with pytest.raises(QueryExecutionError):
            sqlite_db.execute("SELECT * FROM missing_table")

        stats = sqlite_db.get_connection_stats()

        assert stats["queries_executed"] == 1
        assert stats["failed_queries"] == 1
        assert stats["error_rate"] == 100.0
        assert stats["connection"]["connected"] is True
        assert stats["connection"]["connections_established"] == 1
        assert stats["transaction_depth"] == 0

    def test_validation_errors_are_not_counted_as_failures(self, sqlite_db):
        with pytest.raises(QueryValidationError):
            sqlite_db.execute("SELECT * FROM products WHERE 1=1 OR '1'='1'")

        assert sqlite_db.get_connection_stats()["failed_queries"] == 0

    def test_get_database_info_delegates_to_maintenance(self, sqlite_db, monkeypatch):
        monkeypatch.setattr(sqlite_db.maintenance, "get_database_info", lambda: {"version": "x"})

        assert sqlite_db.get_database_info() == {"version": "x"}

    def test_close_logs_final_stats(self, sqlite_db, caplog):
        sqlite_db.fetch_all("SELECT * FROM products")

        with caplog.at_level(logging.INFO, logger="database_manager"):
            sqlite_db.close()

        record = [r for r in caplog.records if r.getMessage() == "Database connection closing"][-1]
        assert record.context["final_stats"]["queries_executed"] == 1
        assert not sqlite_db.connections.is_connected

    def test_context_manager_closes(self, db_config, sqlite_connector, clock, sleeper):
        with DatabaseManager(db_config, connect=sqlite_connector, clock=clock, sleep=sleeper) as db:
            db.test_connection()
            assert db.connections.is_connected

        assert not db.connections.is_connected


class TestDefaultInstance:
    def test_get_database_is_shared_until_closed(self, db_config, monkeypatch):
        monkeypatch.setattr(database_manager, "load_config", lambda: db_config)
        monkeypatch.setattr(database_manager, "_database", None)

        first = get_database()
        assert get_database() is first
        assert first.config is db_config

        close_database()
        assert database_manager._database is None
        assert get_database() is not first
        close_database()
