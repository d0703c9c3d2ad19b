"""
Table Gateway
Generic single-table CRUD helpers over the database manager. Identifiers are
validated and quoted; every value travels as a bound parameter.
"""

import math
import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from database_error_handler import DatabaseError
from db_logging import get_logger
from db_maintenance import quote_identifier

logger = get_logger(__name__)

_ORDER_TERM = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)(?:\s+(ASC|DESC))?\s*$", re.IGNORECASE)


def order_clause(order_by: str) -> str:
    """Validate ``"col [ASC|DESC], ..."`` and return it with quoted columns"""
    terms = []
    for part in order_by.split(","):
        match = _ORDER_TERM.match(part)
        if not match:
            raise DatabaseError(f"Invalid ORDER BY clause: {order_by!r}")
        column, direction = match.groups()
        term = quote_identifier(column)
        if direction:
            term += f" {direction.upper()}"
        terms.append(term)
    return ", ".join(terms)


class TableGateway:
    """Row access for one table through a DatabaseManager"""

    def __init__(self, db, table: str, primary_key: str = "id",
                 timestamps: bool = True, placeholder: str = "%s",
                 returning: bool = True,
                 now: Callable[[], datetime] = datetime.now):
        self.db = db
        self.table = table
        self.primary_key = primary_key
        self.timestamps = timestamps
        self.placeholder = placeholder
        self.returning = returning
        self._now = now
        self._quoted_table = quote_identifier(table)
        self._quoted_pk = quote_identifier(primary_key)

    def _conditions(self, conditions: Optional[Mapping[str, Any]]) -> Tuple[str, List[Any]]:
        """WHERE clause for equality (and IN, for list values) conditions"""
        if not conditions:
            return "", []

        clauses = []
        params: List[Any] = []
        for field, value in conditions.items():
            column = quote_identifier(field)
            if isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    # Empty IN list matches nothing
                    clauses.append("1 = 0")
                    continue
                marks = ", ".join([self.placeholder] * len(values))
                clauses.append(f"{column} IN ({marks})")
                params.extend(values)
            elif value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = {self.placeholder}")
                params.append(value)

        return " WHERE " + " AND ".join(clauses), params

    def find(self, record_id: Any) -> Optional[dict]:
        sql = (
            f"SELECT * FROM {self._quoted_table} "
            f"WHERE {self._quoted_pk} = {self.placeholder} LIMIT 1"
        )
        return self.db.fetch_one(sql, [record_id])

    def where(self, conditions: Optional[Mapping[str, Any]] = None,
              limit: Optional[int] = None, offset: Optional[int] = None,
              order_by: Optional[str] = None) -> List[dict]:
        where_sql, params = self._conditions(conditions)
        sql = f"SELECT * FROM {self._quoted_table}{where_sql}"

        if order_by:
            sql += f" ORDER BY {order_clause(order_by)}"

        if limit:
            sql += f" LIMIT {self.placeholder}"
            params.append(int(limit))
            if offset:
                sql += f" OFFSET {self.placeholder}"
                params.append(int(offset))

        return self.db.fetch_all(sql, params)

    def first(self, conditions: Optional[Mapping[str, Any]] = None,
              order_by: Optional[str] = None) -> Optional[dict]:
        rows = self.where(conditions, limit=1, order_by=order_by)
        return rows[0] if rows else None

    def all(self, limit: Optional[int] = None, offset: Optional[int] = None,
            order_by: Optional[str] = None) -> List[dict]:
        return self.where(None, limit, offset, order_by)

    def count(self, conditions: Optional[Mapping[str, Any]] = None) -> int:
        where_sql, params = self._conditions(conditions)
        sql = f"SELECT COUNT(*) AS total FROM {self._quoted_table}{where_sql}"
        return int(self.db.fetch_scalar(sql, params) or 0)

    def exists(self, conditions: Mapping[str, Any]) -> bool:
        return self.count(conditions) > 0

    def _timestamp(self) -> datetime:
        return self._now().replace(microsecond=0)

    def insert(self, data: Mapping[str, Any]) -> Any:
        """Insert one row and return its generated primary key"""
        record = dict(data)
        if not record:
            raise DatabaseError(f"Cannot insert an empty record into {self.table}")

        if self.timestamps:
            now = self._timestamp()
            record.setdefault("created_at", now)
            record.setdefault("updated_at", now)

        columns = ", ".join(quote_identifier(field) for field in record)
        marks = ", ".join([self.placeholder] * len(record))
        sql = f"INSERT INTO {self._quoted_table} ({columns}) VALUES ({marks})"
        if self.returning:
            sql += f" RETURNING {self._quoted_pk}"

        result = self.db.execute(sql, list(record.values()))
        return result.last_insert_id

    def update(self, conditions: Optional[Mapping[str, Any]], data: Mapping[str, Any]) -> int:
        """Update matching rows; returns the affected row count"""
        changes = dict(data)
        if self.timestamps and "updated_at" not in changes:
            changes["updated_at"] = self._timestamp()
        if not changes:
            return 0

        set_sql = ", ".join(f"{quote_identifier(field)} = {self.placeholder}" for field in changes)
        where_sql, where_params = self._conditions(conditions)
        sql = f"UPDATE {self._quoted_table} SET {set_sql}{where_sql}"

        result = self.db.execute(sql, list(changes.values()) + where_params)
        return result.rowcount

    def update_by_id(self, record_id: Any, data: Mapping[str, Any]) -> int:
        return self.update({self.primary_key: record_id}, data)

    def delete(self, conditions: Mapping[str, Any]) -> int:
        if not conditions:
            raise DatabaseError(
                "Delete operation requires conditions to prevent accidental data loss"
            )

        where_sql, params = self._conditions(conditions)
        result = self.db.execute(f"DELETE FROM {self._quoted_table}{where_sql}", params)
        return result.rowcount

    def delete_by_id(self, record_id: Any) -> int:
        return self.delete({self.primary_key: record_id})

    def soft_delete(self, conditions: Mapping[str, Any]) -> int:
        """Stamp ``deleted_at`` instead of removing rows"""
        return self.update(conditions, {"deleted_at": self._timestamp()})

    def paginate(self, page: int = 1, per_page: int = 20,
                 conditions: Optional[Mapping[str, Any]] = None,
                 order_by: Optional[str] = None) -> Dict[str, Any]:
        page = max(int(page), 1)
        per_page = max(int(per_page), 1)

        data = self.where(conditions, per_page, (page - 1) * per_page, order_by)
        total = self.count(conditions)
        total_pages = math.ceil(total / per_page)

        return {
            "data": data,
            "pagination": {
                "current_page": page,
                "per_page": per_page,
                "total": total,
                "total_pages": total_pages,
                "has_next": page < total_pages,
                "has_prev": page > 1,
            },
        }

    def bulk_insert(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Insert every record or none of them"""
        records = list(records)
        if not records:
            return 0

        try:
            with self.db.transaction():
                for record in records:
                    self.insert(record)
        except Exception as e:
            logger.error("Bulk insert failed", {"table": self.table, "error": str(e)})
            raise

        logger.info("Bulk insert completed", {"table": self.table, "records_inserted": len(records)})
        return len(records)
