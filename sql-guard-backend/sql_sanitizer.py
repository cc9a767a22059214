"""
SQLGuard - SQL Sanitizer (LIMIT Bounding)
=========================================

PURPOSE:
Guarantee that every SELECT that reaches the database carries a LIMIT no
greater than the configured row cap.

RULES:
- Only statements starting with SELECT are touched (everything else: no-op)
- Trailing LIMIT n above the cap        -> rewritten to LIMIT <cap>
- Trailing LIMIT ALL                    -> rewritten to LIMIT <cap>
- No trailing LIMIT                     -> LIMIT <cap> appended after the last
                                           clause (before a trailing OFFSET)
- Trailing FETCH FIRST n ROWS ONLY      -> treated as the outer LIMIT (n capped)
- A trailing semicolon is preserved
- Idempotent: ensure_bounded(ensure_bounded(sql)) == ensure_bounded(sql)

WHAT THIS IS NOT:
- NOT query optimization (we only add or lower LIMIT)
- NOT a parser: LIMITs inside subqueries are left alone, only the outer
  statement's trailing LIMIT counts
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from engine_config import MAX_ROWS
from sql_tokens import mask_string_literals

logger = logging.getLogger(__name__)


@dataclass
class LimitEnforcementResult:
    """
    Result of LIMIT enforcement.

    Attributes:
        sql: The SQL with LIMIT enforced
        limit_applied: Whether the SQL was changed (LIMIT injected or lowered)
        original_limit: The original trailing LIMIT value (if any)
        enforced_limit: The LIMIT the statement now carries (0 if untouched non-SELECT)
        was_capped: True when an existing LIMIT was reduced
    """
    sql: str
    limit_applied: bool
    original_limit: Optional[int]
    enforced_limit: int
    was_capped: bool = False


class SQLLimitEnforcer:
    """
    Injects or caps the outer LIMIT of SELECT statements.

    IMPORTANT:
    - This is SYNTAX modification, not optimization
    - Clause order is respected: LIMIT goes after ORDER BY / HAVING /
      GROUP BY / WHERE, i.e. at the end, but before a trailing OFFSET
    """

    SELECT_PATTERN = re.compile(r'^\s*SELECT\b', re.IGNORECASE)
    TRAILING_LIMIT_PATTERN = re.compile(
        r'\bLIMIT\s+(?P<value>\d+|ALL)(?:\s+OFFSET\s+\d+(?:\s+ROWS?)?)?\s*$',
        re.IGNORECASE
    )
    TRAILING_OFFSET_PATTERN = re.compile(r'\s+OFFSET\s+\d+(?:\s+ROWS?)?\s*$', re.IGNORECASE)
    # SQL-standard spelling of LIMIT; "FETCH FIRST ROW ONLY" means one row
    TRAILING_FETCH_PATTERN = re.compile(
        r'\bFETCH\s+(?:FIRST|NEXT)\s+(?:(?P<value>\d+)\s+)?ROWS?\s+(?:ONLY|WITH\s+TIES)\s*$',
        re.IGNORECASE
    )

    def __init__(self, max_rows: int = MAX_ROWS):
        if isinstance(max_rows, bool) or not isinstance(max_rows, int) or max_rows <= 0:
            raise ValueError(f"max_rows must be a positive integer, got {max_rows}")
        self.max_rows = max_rows

    def enforce(self, sql: str) -> LimitEnforcementResult:
        """Canonical LIMIT enforcement. Idempotent."""
        if not sql or not sql.strip() or not self.SELECT_PATTERN.match(sql):
            return LimitEnforcementResult(
                sql=sql,
                limit_applied=False,
                original_limit=None,
                enforced_limit=0,
            )

        body = sql.strip()
        has_semicolon = body.endswith(';')
        if has_semicolon:
            body = body[:-1].rstrip()

        masked = mask_string_literals(body)
        limit_match = self.TRAILING_LIMIT_PATTERN.search(masked)

        if limit_match:
            raw_value = limit_match.group('value')
            original_limit = None if raw_value.upper() == 'ALL' else int(raw_value)

            if original_limit is not None and original_limit <= self.max_rows:
                logger.debug(f"[BOUNDING] Existing LIMIT {original_limit} within bounds, no change")
                return LimitEnforcementResult(
                    sql=self._finish(body, has_semicolon),
                    limit_applied=False,
                    original_limit=original_limit,
                    enforced_limit=original_limit,
                )

            start, end = limit_match.span('value')
            capped = body[:start] + str(self.max_rows) + body[end:]
            logger.info(f"[BOUNDING] Capped LIMIT {raw_value} -> {self.max_rows}")
            return LimitEnforcementResult(
                sql=self._finish(capped, has_semicolon),
                limit_applied=True,
                original_limit=original_limit,
                enforced_limit=self.max_rows,
                was_capped=True,
            )

        fetch_match = self.TRAILING_FETCH_PATTERN.search(masked)
        if fetch_match:
            return self._enforce_fetch(body, fetch_match, has_semicolon)

        offset_match = self.TRAILING_OFFSET_PATTERN.search(masked)
        if offset_match:
            insert_at = offset_match.start()
            bounded = f"{body[:insert_at]} LIMIT {self.max_rows}{body[insert_at:]}"
        else:
            bounded = f"{body} LIMIT {self.max_rows}"

        logger.info(f"[BOUNDING] Injected LIMIT {self.max_rows}")
        return LimitEnforcementResult(
            sql=self._finish(bounded, has_semicolon),
            limit_applied=True,
            original_limit=None,
            enforced_limit=self.max_rows,
        )

    def _enforce_fetch(self, body: str, fetch_match, has_semicolon: bool) -> LimitEnforcementResult:
        raw_value = fetch_match.group('value')
        original_limit = int(raw_value) if raw_value else 1

        if original_limit <= self.max_rows:
            logger.debug(f"[BOUNDING] Existing FETCH FIRST {original_limit} within bounds, no change")
            return LimitEnforcementResult(
                sql=self._finish(body, has_semicolon),
                limit_applied=False,
                original_limit=original_limit,
                enforced_limit=original_limit,
            )

        start, end = fetch_match.span('value')
        capped = body[:start] + str(self.max_rows) + body[end:]
        logger.info(f"[BOUNDING] Capped FETCH FIRST {raw_value} -> {self.max_rows}")
        return LimitEnforcementResult(
            sql=self._finish(capped, has_semicolon),
            limit_applied=True,
            original_limit=original_limit,
            enforced_limit=self.max_rows,
            was_capped=True,
        )

    @staticmethod
    def _finish(body: str, has_semicolon: bool) -> str:
        return body + ';' if has_semicolon else body


def ensure_bounded(sql: str, max_rows: int = MAX_ROWS) -> str:
    """
    Return SQL whose outer LIMIT is at most max_rows.

    Example:
        ensure_bounded("SELECT * FROM t ORDER BY x DESC")
        -> "SELECT * FROM t ORDER BY x DESC LIMIT 5000"
    """
    return SQLLimitEnforcer(max_rows).enforce(sql).sql


def extract_limit(sql: str) -> Optional[int]:
    """
    Extract the trailing LIMIT value from a SQL query.

    Returns None if there is no trailing LIMIT or it is LIMIT ALL. A trailing
    FETCH FIRST n ROWS ONLY counts as LIMIT n.
    """
    if not sql:
        return None
    masked = mask_string_literals(sql.strip().rstrip(';').rstrip())
    match = SQLLimitEnforcer.TRAILING_LIMIT_PATTERN.search(masked)
    if match and match.group('value').isdigit():
        return int(match.group('value'))
    fetch = SQLLimitEnforcer.TRAILING_FETCH_PATTERN.search(masked)
    if fetch:
        return int(fetch.group('value') or 1)
    return None


def create_limit_enforcer(max_rows: int = MAX_ROWS) -> SQLLimitEnforcer:
    """Factory function to create a LIMIT enforcer."""
    return SQLLimitEnforcer(max_rows)
