"""
Database Maintenance (PostgreSQL)
Batch administrative operations: vacuum/analyze, integrity checks, size and
server reports, and plain-SQL backups of the public schema.
"""

import gzip
import json
import re
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from database_error_handler import DatabaseError, TransactionError
from db_logging import get_logger

logger = get_logger(__name__)

SCHEMA = "public"
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

LIST_TABLES_QUERY = """
    SELECT table_name
    FROM information_schema.tables
    WHERE table_schema = %s AND table_type = 'BASE TABLE'
    ORDER BY table_name
"""

INVALID_INDEXES_QUERY = """
    SELECT c.relname AS index_name
    FROM pg_index i
    JOIN pg_class c ON c.oid = i.indexrelid
    WHERE i.indrelid = %s::regclass AND NOT i.indisvalid
"""

DATABASE_SIZE_QUERY = """
    SELECT current_database() AS database_name,
           ROUND(pg_database_size(current_database()) / 1024.0 / 1024.0, 2) AS size_mb,
           (SELECT COUNT(*) FROM information_schema.tables
            WHERE table_schema = %s AND table_type = 'BASE TABLE') AS table_count
"""

TABLE_SIZES_QUERY = """
    SELECT relname AS table_name,
           ROUND(pg_total_relation_size(relid) / 1024.0 / 1024.0, 2) AS size_mb,
           n_live_tup AS table_rows
    FROM pg_stat_user_tables
    WHERE schemaname = %s
    ORDER BY pg_total_relation_size(relid) DESC
"""

DATABASE_INFO_QUERY = """
    SELECT version() AS version,
           current_database() AS database,
           pg_encoding_to_char(d.encoding) AS charset,
           d.datcollate AS collation,
           current_setting('TimeZone') AS timezone,
           pg_backend_pid() AS connection_id,
           EXTRACT(EPOCH FROM (now() - pg_postmaster_start_time()))::bigint AS uptime,
           current_setting('max_connections')::int AS max_connections
    FROM pg_database d
    WHERE d.datname = current_database()
"""

TABLE_COLUMNS_QUERY = """
    SELECT column_name, data_type, character_maximum_length,
           numeric_precision, numeric_scale, is_nullable, column_default
    FROM information_schema.columns
    WHERE table_schema = %s AND table_name = %s
    ORDER BY ordinal_position
"""

PRIMARY_KEY_QUERY = """
    SELECT a.attname AS column_name
    FROM pg_index i
    JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
    WHERE i.indrelid = %s::regclass AND i.indisprimary
"""


def quote_identifier(name: str) -> str:
    """Double-quote a plain table or column name; anything else is refused"""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise DatabaseError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


def sql_literal(value: Any) -> str:
    """Render a Python value as a PostgreSQL literal for backup files"""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"'\\x{bytes(value).hex()}'::bytea"
    if isinstance(value, (datetime, date, dt_time)):
        text = value.isoformat()
    elif isinstance(value, (dict, list)):
        text = json.dumps(value, default=str)
    else:
        text = str(value)
    return "'" + text.replace("'", "''") + "'"


def _column_type(column: Dict[str, Any]) -> str:
    data_type = column["data_type"]
    if column.get("character_maximum_length"):
        return f"{data_type}({column['character_maximum_length']})"
    if data_type == "numeric" and column.get("numeric_precision"):
        scale = column.get("numeric_scale") or 0
        return f"numeric({column['numeric_precision']},{scale})"
    return data_type


class DatabaseMaintenance:
    """Administrative operations; batch and non-concurrent"""

    def __init__(self, db, backup_dir: Union[str, Path] = "backups",
                 now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.backup_dir = Path(backup_dir)
        self._now = now

    def list_tables(self) -> List[str]:
        rows = self.db.fetch_all(LIST_TABLES_QUERY, [SCHEMA], use_cache=False)
        return [row["table_name"] for row in rows]

    def _resolve_tables(self, tables: Optional[Iterable[str]]) -> List[str]:
        names = list(tables) if tables is not None else self.list_tables()
        for name in names:
            quote_identifier(name)
        return names

    def optimize_tables(self, tables: Optional[Iterable[str]] = None) -> List[Dict[str, str]]:
        """VACUUM ANALYZE each table (all public tables by default)"""
        if self.db.in_transaction:
            raise TransactionError("VACUUM cannot run inside an open transaction")

        try:
            optimized = []
            for table in self._resolve_tables(tables):
                self.db.execute(f"VACUUM ANALYZE {quote_identifier(table)}", use_cache=False)
                optimized.append({"table": table, "status": "OK"})

            logger.info(
                "Database tables optimized",
                {"tables_count": len(optimized), "tables": [t["table"] for t in optimized]},
            )
            return optimized

        except Exception as e:
            logger.error("Failed to optimize database tables", {"error": str(e)})
            raise

    def check_integrity(self, tables: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, Any]]:
        """Full scan of each table plus a check for invalid indexes"""
        try:
            results: Dict[str, Dict[str, Any]] = {}
            for table in self._resolve_tables(tables):
                row_count = self.db.fetch_scalar(
                    f"SELECT COUNT(*) AS row_count FROM {quote_identifier(table)}",
                    use_cache=False,
                )
                invalid = self.db.fetch_all(INVALID_INDEXES_QUERY, [table], use_cache=False)
                invalid_indexes = [row["index_name"] for row in invalid]

                results[table] = {
                    "status": "OK" if not invalid_indexes else "invalid_indexes",
                    "row_count": row_count,
                    "invalid_indexes": invalid_indexes,
                }

            logger.info("Database integrity check completed", {"tables_checked": len(results)})
            return results

        except Exception as e:
            logger.error("Failed to check database integrity", {"error": str(e)})
            raise

    def get_database_size(self) -> Optional[Dict[str, Any]]:
        """Database size in MB and per-table sizes, largest first"""
        try:
            database = self.db.fetch_one(DATABASE_SIZE_QUERY, [SCHEMA], use_cache=False)
            tables = self.db.fetch_all(TABLE_SIZES_QUERY, [SCHEMA], use_cache=False)
            return {"database": database, "tables": tables}

        except Exception as e:
            logger.error("Failed to get database size information", {"error": str(e)})
            return None

    def get_database_info(self) -> Optional[Dict[str, Any]]:
        try:
            info = dict(self.db.fetch_one(DATABASE_INFO_QUERY, use_cache=False) or {})
        except Exception as e:
            logger.error("Failed to get database information", {"error": str(e)})
            return None

        connection = self.db.config.connection
        info["host"] = connection.host
        info["port"] = connection.port
        return info

    def _table_definition(self, table: str) -> str:
        columns = self.db.fetch_all(TABLE_COLUMNS_QUERY, [SCHEMA, table], use_cache=False)
        primary_key = [
            row["column_name"]
            for row in self.db.fetch_all(PRIMARY_KEY_QUERY, [table], use_cache=False)
        ]

        lines = []
        for column in columns:
            line = f"    {quote_identifier(column['column_name'])} {_column_type(column)}"
            if column.get("column_default") is not None:
                line += f" DEFAULT {column['column_default']}"
            if column.get("is_nullable") == "NO":
                line += " NOT NULL"
            lines.append(line)

        if primary_key:
            keys = ", ".join(quote_identifier(name) for name in primary_key)
            lines.append(f"    PRIMARY KEY ({keys})")

        body = ",\n".join(lines)
        return f"CREATE TABLE {quote_identifier(table)} (\n{body}\n);\n"

    def _table_data(self, table: str) -> str:
        result = self.db.execute(f"SELECT * FROM {quote_identifier(table)}", use_cache=False)
        if not result.rows:
            return ""

        columns = ", ".join(quote_identifier(name) for name in result.columns)
        values = [
            "(" + ", ".join(sql_literal(row[name]) for name in result.columns) + ")"
            for row in result.rows
        ]
        return (
            f"-- Data for table {quote_identifier(table)}\n"
            f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES\n"
            + ",\n".join(values)
            + ";\n\n"
        )

    def create_backup(self, include_data: bool = True, compress: bool = False) -> Path:
        """Write schema (and optionally data) of every public table to a .sql file"""
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)

            generated = self._now()
            database = self.db.config.connection.database
            suffix = ".sql.gz" if compress else ".sql"
            backup_file = self.backup_dir / (
                f"backup_{database}_{generated.strftime('%Y-%m-%d_%H-%M-%S')}{suffix}"
            )

            tables = self.list_tables()
            parts = [
                "-- Database Backup\n",
                f"-- Generated: {generated.strftime('%Y-%m-%d %H:%M:%S')}\n",
                f"-- Database: {database}\n\n",
                "SET session_replication_role = replica;\n\n",
            ]

            for table in tables:
                parts.append(f"-- Table structure for {quote_identifier(table)}\n")
                parts.append(f"DROP TABLE IF EXISTS {quote_identifier(table)} CASCADE;\n")
                parts.append(self._table_definition(table) + "\n")
                if include_data:
                    parts.append(self._table_data(table))

            parts.append("SET session_replication_role = DEFAULT;\n")
            backup = "".join(parts)

            if compress:
                with gzip.open(backup_file, "wt", encoding="utf-8") as f:
                    f.write(backup)
            else:
                backup_file.write_text(backup, encoding="utf-8")

            logger.info(
                "Database backup created",
                {
                    "backup_file": str(backup_file),
                    "include_data": include_data,
                    "compressed": compress,
                    "tables_count": len(tables),
                    "file_size": backup_file.stat().st_size,
                },
            )
            return backup_file

        except Exception as e:
            logger.error("Failed to create database backup", {"error": str(e)})
            raise
