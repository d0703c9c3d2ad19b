"""
Query Result Cache
Bounded, insertion-ordered cache of materialized SELECT results keyed by a
fingerprint of the statement text and its bound parameters.
"""

import copy
import hashlib
import json
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Set

from parameter_binding import BoundParameters
from query_validator import normalize_sql

_SELECT = re.compile(r"^\s*(\(\s*)*SELECT\b", re.IGNORECASE)
_LOCKING_READ = re.compile(r"\bFOR\s+(NO\s+KEY\s+)?(UPDATE|SHARE|KEY\s+SHARE)\b", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")
_IDENTIFIER = r'[`"]?([A-Za-z_][A-Za-z0-9_$]*)[`"]?(?:\s*\.\s*[`"]?([A-Za-z_][A-Za-z0-9_$]*)[`"]?)?'
_CLAUSE_KEYWORDS = (
    r"(?:WHERE|JOIN|INNER|LEFT|RIGHT|FULL|CROSS|NATURAL|ON|USING|GROUP|ORDER|HAVING"
    r"|LIMIT|OFFSET|UNION|INTERSECT|EXCEPT|FOR|WINDOW|RETURNING|SET|VALUES)\b"
)
_TABLE_SOURCE = re.compile(r"\b(FROM|JOIN)\s+", re.IGNORECASE)
# One table reference, an optional alias, and the comma that continues a FROM list
_TABLE_REF = re.compile(
    _IDENTIFIER + r"(?:\s+(?:AS\s+)?(?!" + _CLAUSE_KEYWORDS + r")[A-Za-z_][A-Za-z0-9_]*)?\s*(,)?\s*",
    re.IGNORECASE,
)
_WRITE_TABLES = re.compile(
    r"^(?:INSERT\s+(?:IGNORE\s+)?INTO|REPLACE\s+INTO|UPDATE|DELETE\s+FROM|MERGE\s+INTO)\s+"
    + _IDENTIFIER,
    re.IGNORECASE,
)


def is_read_only(sql: str) -> bool:
    """True for SELECT-shaped statements that take no row locks"""
    return bool(_SELECT.match(sql)) and not _LOCKING_READ.search(sql)


def _table_name(match) -> str:
    schema_or_table, table = match.group(1), match.group(2)
    return (table or schema_or_table).lower()


def tables_read(sql: str) -> FrozenSet[str]:
    """Tables named after FROM (including comma lists) and JOIN"""
    normalized = normalize_sql(sql)
    tables: Set[str] = set()
    for source in _TABLE_SOURCE.finditer(normalized):
        position = source.end()
        while True:
            ref = _TABLE_REF.match(normalized, position)
            if ref is None:
                break
            tables.add(_table_name(ref))
            if source.group(1).upper() != "FROM" or not ref.group(3):
                break
            position = ref.end()
    return frozenset(tables)


def tables_written(sql: str) -> FrozenSet[str]:
    match = _WRITE_TABLES.match(normalize_sql(sql))
    return frozenset([_table_name(match)]) if match else frozenset()


def fingerprint(sql: str, params: BoundParameters) -> str:
    """Stable hash of the whitespace-normalized statement and its parameters"""
    normalized = _WHITESPACE.sub(" ", sql).strip()
    payload = json.dumps(
        {"sql": normalized, "positional": params.positional, "params": params.serialize()},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    fingerprint: str
    snapshot: List[dict]
    columns: List[str]
    inserted_at: int
    tables: FrozenSet[str] = field(default_factory=frozenset)


class QueryCache:
    """FIFO-evicting cache for read-only query snapshots"""

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._counter = 0
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str) -> Optional[CacheEntry]:
        """Copy of the entry for ``key`` (None on miss)"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            return CacheEntry(
                fingerprint=entry.fingerprint,
                snapshot=copy.deepcopy(entry.snapshot),
                columns=list(entry.columns),
                inserted_at=entry.inserted_at,
                tables=entry.tables,
            )

    def put(self, key: str, rows: List[dict], columns: Iterable[str] = (),
            tables: Iterable[str] = ()) -> None:
        """Insert or refresh ``key``; oldest entries are evicted past capacity"""
        if self.capacity <= 0:
            return

        with self._lock:
            self._counter += 1
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(
                fingerprint=key,
                snapshot=copy.deepcopy(rows),
                columns=list(columns),
                inserted_at=self._counter,
                tables=frozenset(t.lower() for t in tables),
            )
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def invalidate_tables(self, tables: Iterable[str]) -> int:
        """Drop every entry that reads one of ``tables``; returns the count"""
        targets: Set[str] = {t.lower() for t in tables}
        if not targets:
            return 0

        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.tables & targets]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            return size

    def keys(self) -> List[str]:
        """Fingerprints, oldest first"""
        with self._lock:
            return list(self._entries.keys())
