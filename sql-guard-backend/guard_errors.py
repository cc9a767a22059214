"""
SQLGuard - Error Taxonomy

Failures inside the engine travel as values (ValidationOutcome,
ExecutionOutcome, ColumnCheckResult), tagged with an ErrorKind so the calling
layer can decide whether a retry with different SQL makes sense.

Only programmer and deployment errors are raised:
- ConfigurationError for invalid limits or missing connection settings
"""

from enum import Enum
from typing import Optional

NOT_AVAILABLE_PREFIX = "not_available"


class ErrorKind(str, Enum):
    """Which stage rejected the query."""
    SYNTAX_SAFETY = "syntax_safety"              # Tier 1 - never retried automatically
    STRUCTURAL = "structural"                    # Tier 2
    SCHEMA_RESOLUTION = "schema_resolution"      # Tier 3 - unknown table
    COLUMN_RESOLUTION = "column_resolution"      # post-validation column check
    EXECUTION_TIMEOUT = "execution_timeout"      # safe to retry with simpler SQL
    EXECUTION_DRIVER_ERROR = "execution_driver_error"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.SYNTAX_SAFETY


class ConfigurationError(ValueError):
    """Raised when engine limits or connection settings are invalid."""
    pass


def not_available_message(error: Optional[str]) -> str:
    """
    Build the user-facing failure string the chat layer expects.

    Example:
        not_available_message('Table "x" does not exist')
        -> 'not_available: Table "x" does not exist'
    """
    detail = (error or "").strip() or "The query could not be answered from the available data."
    if detail.lower().startswith(NOT_AVAILABLE_PREFIX):
        return detail
    return f"{NOT_AVAILABLE_PREFIX}: {detail}"


def is_not_available(sql: Optional[str]) -> bool:
    """True when the NL-SQL collaborator declined to produce SQL."""
    if not sql:
        return False
    return sql.strip().lower().startswith(NOT_AVAILABLE_PREFIX)
