"""
Query Validator
Static inspection of SQL text for destructive or injection-shaped patterns.

This is a heuristic second line of defence. Parameter binding is what keeps
user input out of statements; pattern matching only catches statements
that were already assembled unsafely, and it will miss obfuscated ones.
"""

import re
from typing import List, Optional, Pattern, Tuple

from database_error_handler import QueryValidationError
from db_logging import get_logger

logger = get_logger(__name__)

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"--[^\n]*")
_WHITESPACE = re.compile(r"\s+")

# (name, pattern) checked against the normalized statement
_NORMALIZED_PATTERNS: List[Tuple[str, str]] = [
    ("ddl", r"\b(DROP|ALTER|CREATE|TRUNCATE)\s+"),
    ("into_outfile", r"\bINTO\s+(OUTFILE|DUMPFILE)\b"),
    ("load_file", r"\bLOAD_FILE\s*\("),
    ("server_file_read", r"\bPG_READ_(BINARY_)?FILE\s*\("),
    ("copy_program", r"\bCOPY\b.*\b(TO|FROM)\s+PROGRAM\b"),
    ("union_select", r"\bUNION\s+(ALL\s+)?.*\bSELECT\b"),
    ("exec", r"\bEXEC(UTE)?\s*\("),
    ("system", r"\bSYSTEM\s*\("),
    ("xp_cmdshell", r"\bXP_CMDSHELL\b"),
    ("tautology_quoted", r"\bOR\s+'(\d+)'\s*=\s*'\1'"),
    ("tautology_numeric", r"\bOR\s+(\d+)\s*=\s*\1\b"),
    ("stacked_statement", r";\s*(DROP|DELETE|TRUNCATE|ALTER|CREATE|UPDATE|INSERT|GRANT)\b"),
]

# (name, pattern) checked against the raw statement, before comments are stripped
_RAW_PATTERNS: List[Tuple[str, str]] = [
    ("trailing_comment", r"--\s*$"),
    ("quote_then_comment", r"'\s*--"),
]


def normalize_sql(sql: str) -> str:
    """Strip comments and collapse whitespace"""
    normalized = _BLOCK_COMMENT.sub("", sql)
    normalized = _LINE_COMMENT.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


class QueryValidator:
    """Rejects statements matching known-dangerous patterns"""

    def __init__(self, extra_patterns: Optional[List[Tuple[str, str]]] = None):
        self._normalized: List[Tuple[str, Pattern]] = [
            (name, re.compile(pattern, re.IGNORECASE))
            for name, pattern in _NORMALIZED_PATTERNS + list(extra_patterns or [])
        ]
        self._raw: List[Tuple[str, Pattern]] = [
            (name, re.compile(pattern, re.IGNORECASE | re.MULTILINE))
            for name, pattern in _RAW_PATTERNS
        ]

    def find_violation(self, sql: str) -> Optional[str]:
        """Name of the first matching pattern, or None"""
        for name, pattern in self._raw:
            if pattern.search(sql):
                return name

        normalized = normalize_sql(sql)
        for name, pattern in self._normalized:
            if pattern.search(normalized):
                return name
        return None

    def is_safe(self, sql: str) -> bool:
        return self.find_violation(sql) is None

    def validate(self, sql: str) -> None:
        """Raise QueryValidationError if ``sql`` matches a dangerous pattern"""
        if not isinstance(sql, str) or not sql.strip():
            raise QueryValidationError("Query text must be a non-empty string")

        violation = self.find_violation(sql)
        if violation is None:
            return

        logger.security(
            "Potentially dangerous SQL query blocked",
            {"sql": sql[:500], "pattern": violation},
        )
        raise QueryValidationError(
            "Query contains potentially dangerous SQL patterns", pattern=violation
        )
