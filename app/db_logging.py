"""
Structured Logging for the Data-Access Layer

Every record carries a ``context`` dict (rendered as JSON after the message),
security events go to a dedicated ``security`` logger, and sensitive
parameter values are redacted before they reach any handler.
"""

import json
import logging
import sys
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Union

SENSITIVE_KEYS = ("password", "token", "secret", "key", "hash")
REDACTED = "[REDACTED]"

SECURITY_LOGGER_NAME = "security"

_client_origin: ContextVar[str] = ContextVar("client_origin", default="unknown")


def set_client_origin(origin: Optional[str]):
    """Record the network origin of the current caller (request-scoped)"""
    return _client_origin.set(origin or "unknown")


def reset_client_origin(token) -> None:
    _client_origin.reset(token)


def client_origin() -> str:
    return _client_origin.get()


def sanitize_params(params: Union[Mapping, Sequence, None]) -> Union[Dict, list, None]:
    """Return a copy of ``params`` with sensitive values replaced by [REDACTED].

    Mapping keys are matched case-insensitively against SENSITIVE_KEYS;
    positional parameters have no names and pass through unchanged.
    """
    if params is None:
        return None

    if isinstance(params, Mapping):
        sanitized = {}
        for key, value in params.items():
            key_lower = str(key).lower()
            is_sensitive = any(word in key_lower for word in SENSITIVE_KEYS)
            sanitized[key] = REDACTED if is_sensitive else value
        return sanitized

    if isinstance(params, (str, bytes)):
        return [params]

    return list(params)


class ContextFormatter(logging.Formatter):
    """Formatter that appends the record's context as JSON"""

    def format(self, record):
        message = super().format(record)
        context = getattr(record, "context", None)
        if context:
            message = f"{message} | {json.dumps(context, default=str, sort_keys=True)}"
        return message


class StructuredLogger:
    """
    Thin wrapper around ``logging.Logger`` that takes a context dict with
    each message and exposes a separate channel for security events.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.security_logger = logging.getLogger(SECURITY_LOGGER_NAME)

    def _log(self, level: int, message: str, context: Optional[Dict] = None,
             exc_info: bool = False):
        self.logger.log(level, message, extra={"context": context or {}}, exc_info=exc_info)

    def debug(self, message: str, context: Optional[Dict] = None):
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, context: Optional[Dict] = None):
        self._log(logging.INFO, message, context)

    def warning(self, message: str, context: Optional[Dict] = None):
        self._log(logging.WARNING, message, context)

    def error(self, message: str, context: Optional[Dict] = None, exc_info: bool = False):
        self._log(logging.ERROR, message, context, exc_info=exc_info)

    def critical(self, message: str, context: Optional[Dict] = None):
        self._log(logging.CRITICAL, message, context)

    def security(self, message: str, context: Optional[Dict] = None):
        """Log a security event (always WARNING, always tagged)"""
        payload: Dict[str, Any] = dict(context or {})
        payload["security_event"] = True
        payload.setdefault("ip_address", client_origin())
        payload.setdefault("source", self.logger.name)
        self.security_logger.warning(message, extra={"context": payload})


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)


def configure_logging(level: str = "INFO", log_dir: Optional[Union[str, Path]] = None) -> None:
    """Attach console (and optionally rotating file) handlers to the root logger.

    Safe to call more than once: handlers are only added the first time.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if any(getattr(h, "_db_handler", False) for h in root.handlers):
        return

    formatter = ContextFormatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler._db_handler = True
    root.addHandler(console_handler)

    if log_dir is None:
        return

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_path / "database.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
    )
    file_handler.setFormatter(formatter)
    file_handler._db_handler = True
    root.addHandler(file_handler)

    security_handler = RotatingFileHandler(
        log_path / "security.log",
        maxBytes=5 * 1024 * 1024,  # 5MB
        backupCount=5,
    )
    security_handler.setFormatter(formatter)
    security_handler._db_handler = True
    logging.getLogger(SECURITY_LOGGER_NAME).addHandler(security_handler)
