"""
SQLGuard - Bounded Executor
===========================

Runs the final SQL under hard resource bounds and returns a portable result.

BOUNDS:
- Wall-clock: the blocking driver call runs in a worker thread raced against
  asyncio.wait_for(max_execution_time). On timeout the DBAPI connection is
  cancelled (psycopg2 cancel(), sqlite3 interrupt()) so the query does not
  keep running unobserved. PostgreSQL also gets a server-side statement_timeout.
  A request that times out while still queued for a connection never runs.
- Rows: at most max_rows rows are returned; truncated=True when more existed
- Bytes: rows stop accumulating once max_result_bytes is reached
- Pool: a bounded QueuePool with a checkout timeout

OUTPUT:
Every cell is coerced into a closed set of JSON-safe scalars:
int (within +/-(2^53-1)), float, str, bool, None. Larger integers become
decimal strings, dates become ISO-8601 strings, Decimals become floats.

Failures never raise: timeouts, pool exhaustion and driver errors are
returned as ExecutionOutcome.error with the driver message verbatim.
"""

import asyncio
import datetime
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from engine_config import DEFAULT_CONFIG, EngineConfig
from guard_errors import ConfigurationError, ErrorKind
from schema_provider import GenericType, generic_type_from_pg_oid

logger = logging.getLogger(__name__)

Value = Union[int, float, str, bool, None]

TIMEOUT_MESSAGE = "Query execution exceeded maximum time limit."
POOL_TIMEOUT_MESSAGE = "Timed out waiting for a database connection (connection pool exhausted)."
MAX_SAFE_INTEGER = 2 ** 53 - 1


@dataclass
class ResultColumn:
    name: str
    type: GenericType


@dataclass
class ExecutionOutcome:
    """
    Result of a bounded execution.

    Attributes:
        rows: Result rows as plain dicts of portable scalars
        columns: Column names and generic types, in result order
        error: Failure description (rows and columns are empty when set)
        error_kind: EXECUTION_TIMEOUT or EXECUTION_DRIVER_ERROR
        truncated: True when the row cap or the byte budget cut the result
        elapsed_ms: Wall-clock time spent in execute()
    """
    rows: List[Dict[str, Value]] = field(default_factory=list)
    columns: List[ResultColumn] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    truncated: bool = False
    elapsed_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def row_count(self) -> int:
        return len(self.rows)


# =============================================================================
# STATEMENT PREPARATION + VALUE COERCION
# =============================================================================

def prepare_statement(sql: str) -> str:
    """
    Strip a trailing semicolon and keep only the text before the first
    remaining semicolon.
    """
    statement = (sql or "").strip()
    if statement.endswith(';'):
        statement = statement[:-1].rstrip()
    if ';' in statement:
        statement = statement.split(';', 1)[0].rstrip()
        logger.warning("[EXECUTOR] Dropped text after the first semicolon")
    return statement


def coerce_value(value: Any) -> Value:
    """Convert a driver value into int, float, str, bool or None."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
            return value
        return str(value)
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return str(value)
        if value == value.to_integral_value() and abs(value) > MAX_SAFE_INTEGER:
            return str(value.quantize(Decimal(1)))
        return float(value)
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, memoryview):
        return value.tobytes().hex()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, default=str)
    return str(value)


def infer_generic_type(values: Sequence[Any]) -> GenericType:
    """Generic type from the first non-null driver value of a column."""
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            return GenericType.BOOLEAN
        if isinstance(value, int):
            return GenericType.INTEGER
        if isinstance(value, (float, Decimal)):
            return GenericType.DECIMAL
        if isinstance(value, datetime.datetime):
            return GenericType.TIMESTAMP
        if isinstance(value, datetime.date):
            return GenericType.DATE
        return GenericType.TEXT
    return GenericType.TEXT


def _approximate_size(row: Dict[str, Value]) -> int:
    return sum(len(key) + len(str(value)) for key, value in row.items())


# =============================================================================
# EXECUTOR
# =============================================================================

class BoundedExecutor:
    """
    Explicitly constructed execution handle over a SQLAlchemy Engine.

    Usage:
        with BoundedExecutor.from_url(os.getenv("DATABASE_URL")) as executor:
            outcome = executor.execute_sync("SELECT * FROM cities LIMIT 10")

    The engine's pool is shared by concurrent execute() calls; close()
    disposes it.
    """

    def __init__(self, engine: Engine, config: EngineConfig = DEFAULT_CONFIG):
        self.engine = engine
        self.config = config
        self._closed = False

    @classmethod
    def from_url(cls, database_url: Optional[str] = None, config: Optional[EngineConfig] = None) -> "BoundedExecutor":
        """
        Build an executor with a bounded pool.

        Raises:
            ConfigurationError: If no database URL is given or configured
        """
        config = config or DEFAULT_CONFIG
        database_url = database_url or config.database_url
        if not database_url:
            raise ConfigurationError("DATABASE_URL is not set")

        url = make_url(database_url)
        backend = url.get_backend_name()
        engine_kwargs: Dict[str, Any] = {"pool_pre_ping": True}

        if backend == "sqlite":
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs.update(
                pool_size=config.pool_max_size,
                max_overflow=0,
                pool_timeout=config.pool_acquire_timeout_s,
                pool_recycle=max(1, int(config.pool_idle_timeout_s)),
            )
            if backend == "postgresql":
                engine_kwargs["connect_args"] = {
                    "connect_timeout": max(1, math.ceil(config.pool_acquire_timeout_s)),
                    "options": f"-c statement_timeout={config.max_execution_time_ms}",
                }

        engine = create_engine(url, **engine_kwargs)
        logger.info(
            f"[EXECUTOR] Engine created ({backend}, pool={config.pool_max_size}, "
            f"timeout={config.max_execution_time_ms}ms)"
        )
        return cls(engine, config)

    async def execute(self, sql: str) -> ExecutionOutcome:
        """Execute one statement under the configured bounds. Never raises."""
        started = time.perf_counter()
        statement = prepare_statement(sql)
        if not statement:
            return self._failure("No SQL statement to execute.", ErrorKind.EXECUTION_DRIVER_ERROR, started)
        if self._closed:
            return self._failure("Executor is closed.", ErrorKind.EXECUTION_DRIVER_ERROR, started)

        handles: Dict[str, Any] = {}

        try:
            outcome = await asyncio.wait_for(
                asyncio.to_thread(self._run, statement, handles),
                timeout=self.config.max_execution_time_s,
            )
        except asyncio.TimeoutError:
            handles["cancelled"] = True
            self._cancel(handles)
            logger.warning(f"[EXECUTOR] Query timed out after {self.config.max_execution_time_ms}ms")
            return self._failure(TIMEOUT_MESSAGE, ErrorKind.EXECUTION_TIMEOUT, started)
        except PoolTimeoutError:
            logger.warning("[EXECUTOR] Connection pool checkout timed out")
            return self._failure(POOL_TIMEOUT_MESSAGE, ErrorKind.EXECUTION_TIMEOUT, started)
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None)
            if orig is not None and type(orig).__name__ == "QueryCanceled":
                logger.warning("[EXECUTOR] Query cancelled by server statement_timeout")
                return self._failure(TIMEOUT_MESSAGE, ErrorKind.EXECUTION_TIMEOUT, started)
            message = str(orig).strip() if orig is not None else str(e)
            logger.error(f"[EXECUTOR] Query execution failed: {message}")
            return self._failure(message, ErrorKind.EXECUTION_DRIVER_ERROR, started)
        except Exception as e:
            message = str(e) or "Database execution error"
            logger.error(f"[EXECUTOR] Query execution failed: {message}")
            return self._failure(message, ErrorKind.EXECUTION_DRIVER_ERROR, started)

        outcome.elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"[EXECUTOR] {outcome.row_count} rows in {outcome.elapsed_ms:.1f}ms"
            f"{' (truncated)' if outcome.truncated else ''}"
        )
        return outcome

    def execute_sync(self, sql: str) -> ExecutionOutcome:
        """Synchronous wrapper. Must not be called from a running event loop."""
        return asyncio.run(self.execute(sql))

    def _run(self, statement: str, handles: Dict[str, Any]) -> ExecutionOutcome:
        with self.engine.connect() as conn:
            handles["dbapi_connection"] = conn.connection.dbapi_connection
            # timed out while waiting for the pool: nobody is waiting for a result
            if handles.get("cancelled"):
                logger.debug("[EXECUTOR] Request abandoned before execution, skipping")
                return ExecutionOutcome(error=TIMEOUT_MESSAGE, error_kind=ErrorKind.EXECUTION_TIMEOUT)
            with conn.begin():
                result = conn.exec_driver_sql(
                    statement,
                    execution_options={"no_parameters": True},
                )
                if not result.returns_rows:
                    return ExecutionOutcome()

                names = list(result.keys())
                type_codes = [entry[1] for entry in (result.cursor.description or [])]
                raw_rows = result.fetchmany(self.config.max_rows + 1)

        return self._build_outcome(names, type_codes, raw_rows)

    def _build_outcome(self, names: List[str], type_codes: List[Any], raw_rows) -> ExecutionOutcome:
        if not raw_rows:
            return ExecutionOutcome()

        truncated = len(raw_rows) > self.config.max_rows
        raw_rows = raw_rows[:self.config.max_rows]

        columns = []
        use_oids = self.engine.dialect.name == "postgresql"
        for index, name in enumerate(names):
            generic = None
            if use_oids and index < len(type_codes):
                generic = generic_type_from_pg_oid(type_codes[index])
            if generic is None:
                generic = infer_generic_type([row[index] for row in raw_rows])
            columns.append(ResultColumn(name=name, type=generic))

        rows: List[Dict[str, Value]] = []
        budget = self.config.max_result_bytes
        used = 0
        for raw in raw_rows:
            row = {name: coerce_value(raw[index]) for index, name in enumerate(names)}
            used += _approximate_size(row)
            if rows and used > budget:
                truncated = True
                break
            rows.append(row)

        return ExecutionOutcome(rows=rows, columns=columns, truncated=truncated)

    def _cancel(self, handles: Dict[str, Any]) -> None:
        dbapi_connection = handles.get("dbapi_connection")
        if dbapi_connection is None:
            return
        try:
            if hasattr(dbapi_connection, "cancel"):
                dbapi_connection.cancel()
            elif hasattr(dbapi_connection, "interrupt"):
                dbapi_connection.interrupt()
        except Exception as e:
            logger.warning(f"[EXECUTOR] Failed to cancel timed-out query: {e}")

    def _failure(self, message: str, kind: ErrorKind, started: float) -> ExecutionOutcome:
        return ExecutionOutcome(
            error=message,
            error_kind=kind,
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )

    def close(self) -> None:
        """Dispose the connection pool."""
        if not self._closed:
            self.engine.dispose()
            self._closed = True
            logger.info("[EXECUTOR] Connection pool disposed")

    def __enter__(self) -> "BoundedExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_bounded_executor(database_url: Optional[str] = None, config: Optional[EngineConfig] = None) -> BoundedExecutor:
    """Factory function to create an executor from a database URL."""
    return BoundedExecutor.from_url(database_url, config)
