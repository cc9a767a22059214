"""
SQLGuard - Query Pipeline
=========================

Wires the engine stages together for one request:

    LLM SQL -> Tier 1 -> Tier 2 -> Tier 3 -> Column Check
            -> Numeric-Sort Safety Net -> Sanitizer -> Bounded Executor

Every stage sees the same schema snapshot. The first failing stage stops the
request and its error is surfaced as "not_available: <error>", the string the
chat layer shows to the user. SQL that failed validation is never executed,
not even partially.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from bounded_executor import BoundedExecutor, ExecutionOutcome
from column_checker import ColumnCheckResult, ColumnExistenceChecker
from engine_config import DEFAULT_CONFIG, EngineConfig
from guard_errors import ErrorKind, is_not_available, not_available_message
from numeric_sort_guard import apply_if_top_bottom_intent
from schema_provider import ColumnDescriptor, SchemaProvider, TableDescriptor
from sql_sanitizer import ensure_bounded
from sql_tokens import find_table_references
from sql_validator import SQLSafetyValidator, ValidationOutcome

logger = logging.getLogger(__name__)


@dataclass
class PreparedQuery:
    """
    SQL that passed validation and is ready to execute.

    Attributes:
        sql: Final SQL (corrected, safety-netted and bounded); None on failure
        validation: Outcome of the three validation tiers
        column_check: Outcome of the column check (None when disabled or not reached)
        corrections: Identifier rewrites applied by Tier 3
        error: "not_available: ..." message when preparation failed
        error_kind: Stage that rejected the query
    """
    sql: Optional[str]
    validation: Optional[ValidationOutcome] = None
    column_check: Optional[ColumnCheckResult] = None
    corrections: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PipelineResult:
    success: bool
    sql: Optional[str]
    validation: Optional[ValidationOutcome] = None
    execution: Optional[ExecutionOutcome] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    corrections: List[str] = field(default_factory=list)


class SQLGuardPipeline:
    """
    Validation, correction, bounding and execution for model-generated SQL.

    Usage:
        pipeline = SQLGuardPipeline(provider, executor, config)
        result = await pipeline.run(sql, user_query="top 5 products by price")
        if not result.success:
            return result.error          # "not_available: ..."
    """

    def __init__(
        self,
        schema_provider: SchemaProvider,
        executor: Optional[BoundedExecutor] = None,
        config: EngineConfig = DEFAULT_CONFIG,
    ):
        self.schema_provider = schema_provider
        self.executor = executor
        self.config = config
        self.validator = SQLSafetyValidator(config.max_rows)

    def validate(self, sql: str) -> ValidationOutcome:
        """Tier 1 -> Tier 2 -> Tier 3 against one schema snapshot."""
        return self.validator.validate(sql, self.schema_provider.tables())

    def prepare(self, sql: str, user_query: Optional[str] = None) -> PreparedQuery:
        if is_not_available(sql):
            logger.info("[PIPELINE] Model declined to generate SQL")
            return PreparedQuery(sql=None, error=not_available_message(sql))

        tables = self.schema_provider.tables()

        validation = self.validator.validate(sql, tables)
        if not validation.valid:
            return PreparedQuery(
                sql=None,
                validation=validation,
                error=not_available_message(validation.error),
                error_kind=validation.error_kind,
            )

        current = validation.final_sql(sql)

        column_check = None
        if self.config.enforce_column_check:
            column_check = ColumnExistenceChecker(tables).check(current)
            if not column_check.valid:
                return PreparedQuery(
                    sql=None,
                    validation=validation,
                    column_check=column_check,
                    corrections=list(validation.corrections),
                    error=not_available_message(column_check.error),
                    error_kind=ErrorKind.COLUMN_RESOLUTION,
                )

        current = apply_if_top_bottom_intent(current, user_query, self._referenced_columns(current, tables))
        current = ensure_bounded(current, self.config.max_rows)

        logger.info(f"[PIPELINE] Prepared SQL: {current}")
        return PreparedQuery(
            sql=current,
            validation=validation,
            column_check=column_check,
            corrections=list(validation.corrections),
        )

    async def run(self, sql: str, user_query: Optional[str] = None) -> PipelineResult:
        """
        Prepare and execute one query.

        Raises:
            ValueError: If the pipeline was built without an executor
        """
        if self.executor is None:
            raise ValueError("SQLGuardPipeline.run() requires an executor")

        prepared = self.prepare(sql, user_query)
        if not prepared.ok:
            return PipelineResult(
                success=False,
                sql=None,
                validation=prepared.validation,
                error=prepared.error,
                error_kind=prepared.error_kind,
                corrections=prepared.corrections,
            )

        execution = await self.executor.execute(prepared.sql)
        if not execution.success:
            logger.warning(f"[PIPELINE] Execution failed: {execution.error}")
            return PipelineResult(
                success=False,
                sql=prepared.sql,
                validation=prepared.validation,
                execution=execution,
                error=not_available_message(execution.error),
                error_kind=execution.error_kind,
                corrections=prepared.corrections,
            )

        return PipelineResult(
            success=True,
            sql=prepared.sql,
            validation=prepared.validation,
            execution=execution,
            corrections=prepared.corrections,
        )

    def run_sync(self, sql: str, user_query: Optional[str] = None) -> PipelineResult:
        return asyncio.run(self.run(sql, user_query))

    @staticmethod
    def _referenced_columns(sql: str, tables: List[TableDescriptor]) -> List[ColumnDescriptor]:
        by_lower = {t.name.lower(): t for t in tables}
        columns: List[ColumnDescriptor] = []
        for ref in find_table_references(sql):
            table = by_lower.get(ref.name.lower())
            if table is None:
                continue
            columns.extend(c for c in table.columns if c not in columns)
        return columns


def create_pipeline(
    schema_provider: SchemaProvider,
    executor: Optional[BoundedExecutor] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> SQLGuardPipeline:
    """Factory function to create a pipeline."""
    return SQLGuardPipeline(schema_provider, executor, config)
