"""
Database Error Handling Module
Classifies low-level driver failures into semantic categories and defines the
exception hierarchy raised by the data-access layer.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Tuple


class ErrorCategory(Enum):
    """Database error categories"""
    AUTHENTICATION = "authentication"
    DATABASE_NOT_FOUND = "database_not_found"
    CONNECTION_REFUSED = "connection_refused"
    TIMEOUT = "timeout"
    DUPLICATE_ENTRY = "duplicate_entry"
    TABLE_NOT_FOUND = "table_not_found"
    CONNECTION_LOST = "connection_lost"
    DEADLOCK = "deadlock"
    UNKNOWN = "unknown"


class ErrorClass(Enum):
    """How a failure propagates through the manager"""
    FATAL = "fatal"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    INTEGRITY = "integrity"
    UNKNOWN = "unknown"


class RecoveryStrategy(Enum):
    """Error recovery strategies"""
    RETRY = "retry"
    RECONNECT = "reconnect"
    ABORT = "abort"
    ESCALATE = "escalate"


class DatabaseError(Exception):
    """Base class for every error raised by the data-access layer"""

    error_class = ErrorClass.UNKNOWN

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = category


class ConfigurationError(DatabaseError):
    """Invalid or malformed database configuration"""

    error_class = ErrorClass.FATAL


class ConnectionFatalError(DatabaseError):
    """Raised when every connection attempt has been exhausted"""

    error_class = ErrorClass.FATAL

    def __init__(self, message: str, attempts: int,
                 category: ErrorCategory = ErrorCategory.UNKNOWN):
        super().__init__(message, category)
        self.attempts = attempts


class QueryValidationError(DatabaseError):
    """Statement rejected before execution"""

    error_class = ErrorClass.VALIDATION

    def __init__(self, message: str, pattern: Optional[str] = None):
        super().__init__(message)
        self.pattern = pattern


class ParameterBindingError(DatabaseError):
    """Parameters cannot be bound to the statement"""

    error_class = ErrorClass.VALIDATION


class QueryExecutionError(DatabaseError):
    """Driver failure while executing a statement"""

    def __init__(self, message: str, category: ErrorCategory, sql: Optional[str] = None):
        super().__init__(message, category)
        self.sql = sql

    @property
    def error_class(self) -> ErrorClass:
        return error_class_for(self.category)


class TransactionError(DatabaseError):
    """Transaction state machine misuse or a failed BEGIN/COMMIT/ROLLBACK"""

    error_class = ErrorClass.UNKNOWN


# PostgreSQL SQLSTATE codes (psycopg2 exposes them as ``pgcode``)
_SQLSTATE_CATEGORIES: Dict[str, ErrorCategory] = {
    "28000": ErrorCategory.AUTHENTICATION,
    "28P01": ErrorCategory.AUTHENTICATION,
    "3D000": ErrorCategory.DATABASE_NOT_FOUND,
    "23505": ErrorCategory.DUPLICATE_ENTRY,
    "42P01": ErrorCategory.TABLE_NOT_FOUND,
    "40P01": ErrorCategory.DEADLOCK,
    "40001": ErrorCategory.DEADLOCK,
    "57014": ErrorCategory.TIMEOUT,
    "55P03": ErrorCategory.TIMEOUT,
    "57P01": ErrorCategory.CONNECTION_LOST,
    "08003": ErrorCategory.CONNECTION_LOST,
    "08006": ErrorCategory.CONNECTION_LOST,
}

# MySQL client/server error numbers (first element of ``args``)
_MYSQL_CODE_CATEGORIES: Dict[int, ErrorCategory] = {
    1044: ErrorCategory.AUTHENTICATION,
    1045: ErrorCategory.AUTHENTICATION,
    1049: ErrorCategory.DATABASE_NOT_FOUND,
    2003: ErrorCategory.CONNECTION_REFUSED,
    1062: ErrorCategory.DUPLICATE_ENTRY,
    1146: ErrorCategory.TABLE_NOT_FOUND,
    2006: ErrorCategory.CONNECTION_LOST,
    2013: ErrorCategory.CONNECTION_LOST,
    1213: ErrorCategory.DEADLOCK,
    1205: ErrorCategory.TIMEOUT,
}

# Checked in order; the first match wins
_MESSAGE_PATTERNS: List[Tuple[ErrorCategory, List[str]]] = [
    (ErrorCategory.AUTHENTICATION, [
        r"access denied",
        r"password authentication failed",
        r"authentication failed",
        r"no password supplied",
    ]),
    (ErrorCategory.DATABASE_NOT_FOUND, [
        r"unknown database",
        r"database \S+ does not exist",
    ]),
    (ErrorCategory.CONNECTION_REFUSED, [
        r"connection refused",
        r"can't connect to",
        r"could not connect to server",
    ]),
    (ErrorCategory.CONNECTION_LOST, [
        r"lost connection",
        r"server has gone away",
        r"server closed the connection unexpectedly",
        r"connection already closed",
        r"terminating connection",
        r"broken pipe",
        r"connection reset",
    ]),
    (ErrorCategory.DEADLOCK, [
        r"deadlock",
        r"could not serialize access",
    ]),
    (ErrorCategory.DUPLICATE_ENTRY, [
        r"duplicate entry",
        r"duplicate key value",
        r"unique constraint failed",
    ]),
    (ErrorCategory.TABLE_NOT_FOUND, [
        r"doesn't exist",
        r"relation \S+ does not exist",
        r"no such table",
    ]),
    (ErrorCategory.TIMEOUT, [
        r"time(d)?[ -]?out",
        r"canceling statement due to statement timeout",
    ]),
]

_COMPILED_PATTERNS: List[Tuple[ErrorCategory, List[Pattern]]] = [
    (category, [re.compile(p, re.IGNORECASE) for p in patterns])
    for category, patterns in _MESSAGE_PATTERNS
]

_ERROR_CLASSES: Dict[ErrorCategory, ErrorClass] = {
    ErrorCategory.AUTHENTICATION: ErrorClass.FATAL,
    ErrorCategory.DATABASE_NOT_FOUND: ErrorClass.FATAL,
    ErrorCategory.CONNECTION_REFUSED: ErrorClass.FATAL,
    ErrorCategory.TIMEOUT: ErrorClass.TRANSIENT,
    ErrorCategory.DUPLICATE_ENTRY: ErrorClass.INTEGRITY,
    ErrorCategory.TABLE_NOT_FOUND: ErrorClass.INTEGRITY,
    ErrorCategory.CONNECTION_LOST: ErrorClass.TRANSIENT,
    ErrorCategory.DEADLOCK: ErrorClass.TRANSIENT,
    ErrorCategory.UNKNOWN: ErrorClass.UNKNOWN,
}

_RECOVERY_STRATEGIES: Dict[ErrorCategory, RecoveryStrategy] = {
    ErrorCategory.AUTHENTICATION: RecoveryStrategy.ESCALATE,
    ErrorCategory.DATABASE_NOT_FOUND: RecoveryStrategy.ESCALATE,
    ErrorCategory.CONNECTION_REFUSED: RecoveryStrategy.RECONNECT,
    ErrorCategory.TIMEOUT: RecoveryStrategy.ABORT,
    ErrorCategory.DUPLICATE_ENTRY: RecoveryStrategy.ABORT,
    ErrorCategory.TABLE_NOT_FOUND: RecoveryStrategy.ABORT,
    ErrorCategory.CONNECTION_LOST: RecoveryStrategy.RECONNECT,
    ErrorCategory.DEADLOCK: RecoveryStrategy.RETRY,
    ErrorCategory.UNKNOWN: RecoveryStrategy.ABORT,
}


def _category_from_code(error: Any) -> Optional[ErrorCategory]:
    pgcode = getattr(error, "pgcode", None)
    if isinstance(pgcode, str) and pgcode in _SQLSTATE_CATEGORIES:
        return _SQLSTATE_CATEGORIES[pgcode]

    args = getattr(error, "args", None)
    if isinstance(args, tuple) and args and isinstance(args[0], int) \
            and not isinstance(args[0], bool):
        return _MYSQL_CODE_CATEGORIES.get(args[0])

    return None


def _category_from_message(message: str) -> ErrorCategory:
    for category, patterns in _COMPILED_PATTERNS:
        if any(pattern.search(message) for pattern in patterns):
            return category
    return ErrorCategory.UNKNOWN


def classify(error: Any) -> ErrorCategory:
    """Map a raw driver error (or its message) to an ErrorCategory.

    Never raises: anything that cannot be inspected is UNKNOWN.
    """
    try:
        if isinstance(error, DatabaseError) and error.category is not ErrorCategory.UNKNOWN:
            return error.category

        category = _category_from_code(error)
        if category is not None:
            return category

        message = error if isinstance(error, str) else str(error)
        return _category_from_message(message)
    except Exception:
        return ErrorCategory.UNKNOWN


def error_class_for(category: ErrorCategory) -> ErrorClass:
    """Propagation class for a category"""
    return _ERROR_CLASSES.get(category, ErrorClass.UNKNOWN)


def recovery_strategy_for(category: ErrorCategory) -> RecoveryStrategy:
    """Recovery strategy the manager applies for a category"""
    return _RECOVERY_STRATEGIES.get(category, RecoveryStrategy.ABORT)


def describe_error(error: BaseException) -> Dict[str, Any]:
    """Structured summary of an error for log records"""
    category = classify(error)
    return {
        "error_type": category.value,
        "error_class": error_class_for(category).value,
        "error_code": getattr(error, "pgcode", None) or _first_int_arg(error),
        "error_message": str(error),
    }


def _first_int_arg(error: BaseException) -> Optional[int]:
    args = getattr(error, "args", ())
    if args and isinstance(args[0], int) and not isinstance(args[0], bool):
        return args[0]
    return None
