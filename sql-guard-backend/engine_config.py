"""
SQLGuard - Engine Configuration
===============================

Compiled-in limits for the SQL safety engine, with optional environment
overrides for deployments that need different bounds.

LIMITS:
- MAX_ROWS: hard row cap (LIMIT ceiling + executor fetch cap)
- MAX_EXECUTION_TIME_MS: wall-clock budget for a single query
- POOL_MAX_SIZE: connections held by the shared pool
- POOL_ACQUIRE_TIMEOUT_MS: how long a caller may wait for a pooled connection
- POOL_IDLE_TIMEOUT_MS: recycle age for idle pooled connections
- MAX_RESULT_BYTES: approximate payload budget for a single result

USAGE:
    from engine_config import EngineConfig
    config = EngineConfig.from_env()   # defaults + SQLGUARD_* overrides
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from guard_errors import ConfigurationError

logger = logging.getLogger(__name__)

# ============================================================================
# DEFAULTS
# ============================================================================
MAX_ROWS = 5000
MAX_EXECUTION_TIME_MS = 5000
POOL_MAX_SIZE = 5
POOL_ACQUIRE_TIMEOUT_MS = 2000
POOL_IDLE_TIMEOUT_MS = 30000
MAX_RESULT_BYTES = 10_000_000

ENV_PREFIX = "SQLGUARD_"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class EngineConfig:
    """
    Resource bounds shared by the validators, the sanitizer and the executor.

    Attributes:
        max_rows: Maximum LIMIT allowed and maximum rows returned
        max_execution_time_ms: Query timeout in milliseconds
        pool_max_size: Maximum pooled connections
        pool_acquire_timeout_ms: Connection checkout timeout in milliseconds
        pool_idle_timeout_ms: Idle connection recycle age in milliseconds
        max_result_bytes: Approximate byte budget for returned rows
        enforce_column_check: Run the post-validation column check in the pipeline
        database_url: SQLAlchemy URL for the bounded executor (optional)
    """
    max_rows: int = MAX_ROWS
    max_execution_time_ms: int = MAX_EXECUTION_TIME_MS
    pool_max_size: int = POOL_MAX_SIZE
    pool_acquire_timeout_ms: int = POOL_ACQUIRE_TIMEOUT_MS
    pool_idle_timeout_ms: int = POOL_IDLE_TIMEOUT_MS
    max_result_bytes: int = MAX_RESULT_BYTES
    enforce_column_check: bool = True
    database_url: Optional[str] = None

    def __post_init__(self):
        for field_name in (
            "max_rows",
            "max_execution_time_ms",
            "pool_max_size",
            "pool_acquire_timeout_ms",
            "pool_idle_timeout_ms",
            "max_result_bytes",
        ):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"{field_name} must be a positive integer, got {value!r}"
                )

    @property
    def max_execution_time_s(self) -> float:
        return self.max_execution_time_ms / 1000.0

    @property
    def pool_acquire_timeout_s(self) -> float:
        return self.pool_acquire_timeout_ms / 1000.0

    @property
    def pool_idle_timeout_s(self) -> float:
        return self.pool_idle_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "EngineConfig":
        """
        Build a config from compiled-in defaults plus SQLGUARD_* overrides.

        Reads a .env file first unless load_dotenv_file is False.

        Raises:
            ConfigurationError: If an override is not a valid value
        """
        if load_dotenv_file:
            load_dotenv()

        config = cls(
            max_rows=_int_env("MAX_ROWS", MAX_ROWS),
            max_execution_time_ms=_int_env("MAX_EXECUTION_TIME_MS", MAX_EXECUTION_TIME_MS),
            pool_max_size=_int_env("POOL_MAX_SIZE", POOL_MAX_SIZE),
            pool_acquire_timeout_ms=_int_env("POOL_ACQUIRE_TIMEOUT_MS", POOL_ACQUIRE_TIMEOUT_MS),
            pool_idle_timeout_ms=_int_env("POOL_IDLE_TIMEOUT_MS", POOL_IDLE_TIMEOUT_MS),
            max_result_bytes=_int_env("MAX_RESULT_BYTES", MAX_RESULT_BYTES),
            enforce_column_check=_bool_env("ENFORCE_COLUMN_CHECK", True),
            database_url=os.getenv("DATABASE_URL") or None,
        )
        logger.debug(
            f"[CONFIG] max_rows={config.max_rows} "
            f"timeout_ms={config.max_execution_time_ms} "
            f"pool={config.pool_max_size}"
        )
        return config


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigurationError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{ENV_PREFIX}{name} must be a boolean flag, got {raw!r}")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging with the backend's standard format."""
    logging.basicConfig(level=level, format=LOG_FORMAT)


DEFAULT_CONFIG = EngineConfig()
