"""
Tests for the bounded result cache and statement helpers.
"""

from parameter_binding import bind_parameters
from query_cache import (QueryCache, fingerprint, is_read_only, tables_read,
                         tables_written)


def test_is_read_only():
    assert is_read_only("SELECT * FROM products")
    assert is_read_only("  select 1")
    assert is_read_only("(SELECT id FROM a) UNION ALL (SELECT id FROM b)")
    assert not is_read_only("SELECT * FROM products WHERE id = 1 FOR UPDATE")
    assert not is_read_only("SELECT * FROM products FOR SHARE")
    assert not is_read_only("INSERT INTO products (name) VALUES ('x')")
    assert not is_read_only("WITH x AS (SELECT 1) DELETE FROM y")


def test_tables_read_and_written():
    assert tables_read(
        'SELECT * FROM products p JOIN public."categories" c ON c.id = p.category_id'
    ) == {"products", "categories"}
    assert tables_written('INSERT INTO "Products" (name) VALUES (?)') == {"products"}
    assert tables_written("UPDATE orders SET status = 'paid'") == {"orders"}
    assert tables_written("DELETE FROM cart_items WHERE id = 1") == {"cart_items"}
    assert tables_written("SELECT 1") == frozenset()


def test_tables_read_covers_comma_separated_from_lists():
    assert tables_read("SELECT * FROM orders o, customers AS c, products WHERE o.id = 1") == {
        "orders", "customers", "products",
    }
    assert tables_read("SELECT * FROM a, b LEFT JOIN c ON c.id = b.id ORDER BY 1") == {"a", "b", "c"}


def test_table_extraction_ignores_comments():
    assert tables_written("/* nightly job */ UPDATE stock SET qty = 0") == {"stock"}
    assert tables_written("-- restock\nINSERT INTO stock (qty) VALUES (1)") == {"stock"}
    assert tables_read("SELECT * FROM /* hot */ orders") == {"orders"}


def test_fingerprint_normalizes_whitespace_and_binds_params():
    a = fingerprint("SELECT *  FROM t\nWHERE id = ?", bind_parameters([1]))
    b = fingerprint("SELECT * FROM t WHERE id = ?", bind_parameters([1]))
    c = fingerprint("SELECT * FROM t WHERE id = ?", bind_parameters([2]))
    d = fingerprint("SELECT * FROM t WHERE id = ?", bind_parameters(["1"]))

    assert a == b
    assert b != c
    assert b != d


def test_put_and_get_returns_copies():
    cache = QueryCache(capacity=5)
    rows = [{"id": 1, "name": "widget"}]
    cache.put("k1", rows, ["id", "name"], ["products"])
    rows[0]["name"] = "changed by caller"

    entry = cache.get("k1")
    assert entry.snapshot == [{"id": 1, "name": "widget"}]
    assert entry.columns == ["id", "name"]

    entry.snapshot[0]["name"] = "mutated"
    assert cache.get("k1").snapshot == [{"id": 1, "name": "widget"}]


def test_get_miss():
    assert QueryCache().get("nope") is None


def test_evicts_oldest_inserted_first():
    cache = QueryCache(capacity=2)
    cache.put("a", [])
    cache.put("b", [])
    cache.put("c", [])

    assert cache.keys() == ["b", "c"]
    assert len(cache) == 2
    assert "a" not in cache


def test_refresh_moves_entry_to_newest():
    cache = QueryCache(capacity=2)
    cache.put("a", [])
    cache.put("b", [])
    cache.put("a", [{"x": 1}])
    cache.put("c", [])

    assert cache.keys() == ["a", "c"]
    assert cache.get("a").snapshot == [{"x": 1}]


def test_zero_capacity_disables_caching():
    cache = QueryCache(capacity=0)
    cache.put("a", [{"x": 1}])

    assert len(cache) == 0
    assert cache.get("a") is None


def test_invalidate_tables():
    cache = QueryCache()
    cache.put("products", [], tables=["products"])
    cache.put("join", [], tables=["products", "categories"])
    cache.put("users", [], tables=["users"])

    assert cache.invalidate_tables(["Products"]) == 2
    assert cache.keys() == ["users"]
    assert cache.invalidate_tables([]) == 0


def test_clear_returns_entry_count():
    cache = QueryCache()
    cache.put("a", [])
    cache.put("b", [])

    assert cache.clear() == 2
    assert len(cache) == 0
