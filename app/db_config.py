"""
Database Configuration
Loads connection settings and manager tunables from the environment
(optionally seeded from a .env file).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from database_error_handler import ConfigurationError


@dataclass(frozen=True)
class ConnectionConfig:
    host: str = "localhost"
    port: int = 5432
    database: str = "storefront"
    username: str = "postgres"
    password: str = field(default="", repr=False)
    charset: str = "UTF8"
    collation: str = "en_US.UTF-8"
    connect_timeout: int = 30
    max_attempts: int = 3
    application_name: str = "storefront_db"

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"Invalid database port: {self.port}")
        if self.connect_timeout <= 0:
            raise ConfigurationError(
                f"connect_timeout must be positive, got {self.connect_timeout}"
            )
        if self.max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be at least 1, got {self.max_attempts}"
            )

    def describe(self) -> dict:
        """Connection target without credentials, for logs"""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
        }


@dataclass(frozen=True)
class DatabaseConfig:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    health_check_interval: float = 300.0  # 5 minutes
    cache_capacity: int = 100
    slow_query_threshold_ms: float = 1000.0
    deadlock_retries: int = 3
    backup_dir: str = "backups"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.health_check_interval < 0:
            raise ConfigurationError("health_check_interval cannot be negative")
        if self.cache_capacity < 0:
            raise ConfigurationError("cache_capacity cannot be negative")
        if self.deadlock_retries < 1:
            raise ConfigurationError("deadlock_retries must be at least 1")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def load_config(env_file: Optional[Union[str, Path]] = ".env") -> DatabaseConfig:
    """Build a DatabaseConfig from DB_* environment variables.

    Values already present in the environment take precedence over the
    .env file.
    """
    if env_file is not None and Path(env_file).exists():
        load_dotenv(dotenv_path=env_file, override=False)

    connection = ConnectionConfig(
        host=os.getenv("DB_HOST", "localhost"),
        port=_env_int("DB_PORT", 5432),
        database=os.getenv("DB_NAME", "storefront"),
        username=os.getenv("DB_USER", "postgres"),
        password=os.getenv("DB_PASSWORD", ""),
        charset=os.getenv("DB_CHARSET", "UTF8"),
        collation=os.getenv("DB_COLLATION", "en_US.UTF-8"),
        connect_timeout=_env_int("DB_CONNECT_TIMEOUT", 30),
        max_attempts=_env_int("DB_MAX_CONNECTION_ATTEMPTS", 3),
        application_name=os.getenv("DB_APPLICATION_NAME", "storefront_db"),
    )

    return DatabaseConfig(
        connection=connection,
        health_check_interval=_env_float("DB_HEALTH_CHECK_INTERVAL", 300.0),
        cache_capacity=_env_int("DB_QUERY_CACHE_SIZE", 100),
        slow_query_threshold_ms=_env_float("DB_SLOW_QUERY_MS", 1000.0),
        deadlock_retries=_env_int("DB_DEADLOCK_RETRIES", 3),
        backup_dir=os.getenv("DB_BACKUP_DIR", "backups"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
