"""
SQLGuard - Three-Tier SQL Validation
====================================

PURPOSE:
Decide whether model-generated SQL is safe to run against a semi-trusted,
dynamically discovered schema, before anything touches the database.

PROBLEM STATEMENT:
- SQL text comes from an LLM and is untrusted
- Models hallucinate tables, truncate WHERE clauses and chain statements
- Without validation, users see driver errors or worse, the query runs

SOLUTION:
Three sequential, fail-fast tiers. The first violated rule wins:

    Tier 1 (denylist)   -> lexical safety: comments, catalogs, keywords,
                           incomplete WHERE, chained statements
    Tier 2 (structure)  -> LIMIT ceiling, subquery re-scan, GROUP BY
                           agreement, catalog FROM targets
    Tier 3 (schema)     -> tables must exist (suffix heuristic allowed),
                           column typos fuzzily corrected

WHAT THIS IS NOT:
- NOT a SQL parser (regex over masked text, sqlparse for subquery scanning)
- NOT a database firewall (best-effort denylist + structural sandbox)
- NOT a column gate: column misses are tolerated here and enforced by the
  explicit column check (see column_checker.py)

ARCHITECTURAL POSITION:
    NL-SQL Output -> [TIER 1 -> TIER 2 -> TIER 3] -> Column Check
                  -> Safety Net -> Sanitizer -> Bounded Executor
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

import sqlparse
from sqlparse.sql import Parenthesis

from engine_config import MAX_ROWS
from fuzzy_sql_resolver import resolve
from guard_errors import ErrorKind
from schema_provider import SchemaProvider, TableDescriptor
from sql_tokens import (
    AGGREGATE_FUNCTIONS,
    SQL_KEYWORDS,
    apply_replacements,
    find_clause_end,
    find_table_references,
    mask_string_literals,
    render_identifier,
    select_list_spans,
    split_top_level,
    unquote,
)

logger = logging.getLogger(__name__)

SchemaSource = Union[SchemaProvider, Iterable[TableDescriptor]]


@dataclass
class ValidationOutcome:
    """
    Result of one validation tier (or the whole chain).

    Attributes:
        valid: Whether the SQL passed
        tier: Tier that produced this outcome (1, 2 or 3)
        error: Human-readable description of the single violated rule
        corrected_sql: Rewritten SQL when identifiers were corrected
        error_kind: ErrorKind of the failure (None when valid)
        corrections: One line per identifier rewrite
    """
    valid: bool
    tier: int
    error: Optional[str] = None
    corrected_sql: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    corrections: List[str] = field(default_factory=list)

    def final_sql(self, original: str) -> str:
        """SQL that should continue down the pipeline."""
        return self.corrected_sql or original


# =============================================================================
# DENYLISTS
# =============================================================================

DANGEROUS_KEYWORDS = [
    'COMMENT', 'EXEC', 'EXECUTE', 'CALL', 'GRANT', 'REVOKE', 'MERGE',
    'COPY', 'IMPORT', 'EXPORT', 'BACKUP', 'RESTORE',
]

SUSPICIOUS_PATTERNS = [
    re.compile(r';\s*(EXEC|GRANT|REVOKE|COMMENT)', re.IGNORECASE),
    re.compile(r'--'),
    re.compile(r'/\*'),
    re.compile(r'\*/'),
    re.compile(r'\bxp_', re.IGNORECASE),
    re.compile(r'\bsp_', re.IGNORECASE),
    re.compile(r'\bpg_', re.IGNORECASE),
    re.compile(r'information_schema', re.IGNORECASE),
    re.compile(r'\bsys\.', re.IGNORECASE),
    re.compile(r'\bmaster\.', re.IGNORECASE),
]

VALID_STARTERS = ['SELECT', 'INSERT', 'UPDATE', 'DELETE', 'CREATE', 'ALTER', 'DROP', 'TRUNCATE']

SYSTEM_SCHEMAS = {'information_schema', 'pg_catalog', 'pg_toast', 'sys', 'master'}

INCOMPLETE_WHERE_MESSAGE = (
    "SQL contains incomplete WHERE clause. All comparisons must have both sides "
    "(e.g., \"WHERE state = 'TX'\", not \"WHERE state =\")."
)
DOUBLE_DOT_MESSAGE = 'SQL contains invalid syntax ".." (double dots). This is not valid SQL syntax.'


class SQLSafetyValidator:
    """
    Runs the three validation tiers.

    IMPORTANT:
    - Tiers are fail-fast: a Tier-1 failure never reaches Tier 2
    - Tiers 1 and 2 are purely textual and never consult the schema
    - Tier 3 takes a fresh schema snapshot per call and never mutates it
    """

    DANGEROUS_KEYWORD_PATTERN = re.compile(
        r'\b(' + '|'.join(DANGEROUS_KEYWORDS) + r')\b', re.IGNORECASE
    )
    TRANSACTION_PATTERN = re.compile(r'\b(BEGIN|COMMIT|ROLLBACK)\b', re.IGNORECASE)
    STARTER_PATTERN = re.compile(r'^\s*(' + '|'.join(VALID_STARTERS) + r')\b', re.IGNORECASE)
    LIMIT_PATTERN = re.compile(r'\bLIMIT\s+(\d+)', re.IGNORECASE)
    AGGREGATE_CALL_PATTERN = re.compile(
        r'\b(' + '|'.join(sorted(AGGREGATE_FUNCTIONS)) + r')\s*\(', re.IGNORECASE
    )

    INCOMPLETE_WHERE_PATTERNS = [
        re.compile(r'\bWHERE\s*$', re.IGNORECASE),                               # WHERE
        re.compile(r'\bWHERE\s+.*(=|<>|!=|<|>)\s*$', re.IGNORECASE | re.DOTALL),   # WHERE state =
        re.compile(r'\bWHERE\s+.*\bIN\s*\(\s*$', re.IGNORECASE | re.DOTALL),       # WHERE city IN (
        re.compile(r'\bWHERE\s+.*\b(AND|OR|NOT)\s*$', re.IGNORECASE | re.DOTALL),  # WHERE a = 1 AND
    ]

    # Optional qualifier, then a bare or quoted column, then an optional alias
    SIMPLE_COLUMN_PATTERN = re.compile(
        r'''
        ^(?:(?:"[^"]+"|[A-Za-z_][\w$]*)\s*\.\s*)?
        (?P<column>"[^"]+"|[A-Za-z_][\w$]*)
        (?:\s+(?:AS\s+)?(?P<alias>"[^"]+"|[A-Za-z_][\w$]*))?$
        ''',
        re.IGNORECASE | re.VERBOSE
    )

    def __init__(self, max_rows: int = MAX_ROWS):
        if not isinstance(max_rows, int) or max_rows <= 0:
            raise ValueError(f"max_rows must be a positive integer, got {max_rows}")
        self.max_rows = max_rows

    # =========================================================================
    # TIER 1: DENYLIST
    # =========================================================================

    def check_syntax_and_safety(self, sql: str) -> ValidationOutcome:
        """Lexical safety checks. First violated rule wins."""
        if not sql or not sql.strip():
            return self._reject(1, ErrorKind.SYNTAX_SAFETY, "SQL query is empty.")

        masked = mask_string_literals(sql)

        if '..' in masked:
            return self._reject(1, ErrorKind.SYNTAX_SAFETY, DOUBLE_DOT_MESSAGE)

        if self._has_incomplete_where(masked):
            return self._reject(1, ErrorKind.SYNTAX_SAFETY, INCOMPLETE_WHERE_MESSAGE)

        keyword_match = self.DANGEROUS_KEYWORD_PATTERN.search(masked)
        if keyword_match:
            return self._reject(
                1, ErrorKind.SYNTAX_SAFETY,
                f"Query contains forbidden keyword: {keyword_match.group(1).upper()}. "
                f"Only data queries are allowed.",
            )

        for pattern in SUSPICIOUS_PATTERNS:
            if pattern.search(sql):
                return self._reject(
                    1, ErrorKind.SYNTAX_SAFETY,
                    "Query contains suspicious patterns that are not allowed "
                    "(comments, system catalogs or stored procedures).",
                )

        if not self.STARTER_PATTERN.match(sql):
            return self._reject(
                1, ErrorKind.SYNTAX_SAFETY,
                f"Query must start with a valid SQL statement: {', '.join(VALID_STARTERS)}.",
            )

        if masked.count(';') > 1:
            return self._reject(
                1, ErrorKind.SYNTAX_SAFETY,
                "Query must contain only a single SQL statement (no chained statements).",
            )

        if self.TRANSACTION_PATTERN.search(masked):
            return self._reject(
                1, ErrorKind.SYNTAX_SAFETY,
                "Transaction control statements (BEGIN, COMMIT, ROLLBACK) are not allowed.",
            )

        return ValidationOutcome(valid=True, tier=1)

    def _has_incomplete_where(self, masked: str) -> bool:
        tail = masked.strip().rstrip(';').rstrip()
        for pattern in self.INCOMPLETE_WHERE_PATTERNS:
            if pattern.search(tail):
                return True

        where = re.search(r'\bWHERE\b', tail, re.IGNORECASE)
        if where:
            after = tail[where.end():]
            if after.count('(') > after.count(')'):
                return True
        return False

    # =========================================================================
    # TIER 2: STRUCTURE
    # =========================================================================

    def check_structure(self, sql: str) -> ValidationOutcome:
        """Result-shape checks. Assumes Tier 1 passed."""
        masked = mask_string_literals(sql)

        for match in self.LIMIT_PATTERN.finditer(masked):
            limit_value = int(match.group(1))
            if limit_value > self.max_rows:
                return self._reject(
                    2, ErrorKind.STRUCTURAL,
                    f"LIMIT value ({limit_value}) exceeds maximum allowed ({self.max_rows}).",
                )

        for subquery in self._iter_subqueries(sql):
            keyword_match = self.DANGEROUS_KEYWORD_PATTERN.search(mask_string_literals(subquery))
            if keyword_match:
                return self._reject(
                    2, ErrorKind.STRUCTURAL,
                    f"Subquery contains forbidden operation: {keyword_match.group(1).upper()}.",
                )

        missing = self._missing_group_by_columns(sql, masked)
        if missing:
            return self._reject(
                2, ErrorKind.STRUCTURAL,
                f"Columns in SELECT must appear in GROUP BY clause when using aggregate "
                f"functions. Missing: {', '.join(missing)}. Add them to GROUP BY or use "
                f"them in an aggregate function.",
            )

        for ref in find_table_references(sql):
            schema = (ref.schema or '').lower()
            if schema in SYSTEM_SCHEMAS or ref.name.lower() in SYSTEM_SCHEMAS \
                    or ref.name.lower().startswith('pg_'):
                return self._reject(
                    2, ErrorKind.STRUCTURAL,
                    f'Query references system table "{ref.name}" which is not allowed.',
                )

        return ValidationOutcome(valid=True, tier=2)

    def _iter_subqueries(self, sql: str):
        """Text of every parenthesized SELECT, found via the sqlparse token tree."""
        for statement in sqlparse.parse(sql):
            yield from self._walk_parentheses(statement)

    def _walk_parentheses(self, token_list):
        for token in token_list.tokens:
            if isinstance(token, Parenthesis) and re.match(r'^\(\s*SELECT\b', token.value, re.IGNORECASE):
                yield token.value
            if token.is_group:
                yield from self._walk_parentheses(token)

    def _missing_group_by_columns(self, sql: str, masked: str) -> List[str]:
        missing: List[str] = []

        for list_start, list_end in select_list_spans(masked):
            boundary = find_clause_end(masked, list_end, ('GROUP', 'UNION', 'INTERSECT', 'EXCEPT'))
            group_match = re.match(r'GROUP\s+BY\b', masked[boundary:], re.IGNORECASE)
            if not group_match:
                continue

            group_start = boundary + group_match.end()
            group_end = find_clause_end(
                masked, group_start,
                ('HAVING', 'ORDER', 'LIMIT', 'OFFSET', 'WINDOW', 'FETCH', 'UNION', 'INTERSECT', 'EXCEPT'),
            )

            group_names = set()
            group_ordinals = set()
            for start, end in split_top_level(masked, group_start, group_end):
                item = sql[start:end]
                if item.isdigit():
                    group_ordinals.add(int(item))
                    continue
                simple = self.SIMPLE_COLUMN_PATTERN.match(item)
                if simple and not simple.group('alias'):
                    group_names.add(unquote(simple.group('column'))[0].lower())
                else:
                    group_names.add(re.sub(r'\s+', ' ', item).lower())

            for ordinal, (start, end) in enumerate(split_top_level(masked, list_start, list_end), start=1):
                item = re.sub(r'^\s*(?:DISTINCT|ALL)\s+', '', sql[start:end], flags=re.IGNORECASE)
                if self.AGGREGATE_CALL_PATTERN.search(item):
                    continue
                simple = self.SIMPLE_COLUMN_PATTERN.match(item)
                if not simple:
                    continue
                column, quoted = unquote(simple.group('column'))
                if not quoted and column.lower() in SQL_KEYWORDS:
                    continue
                alias = simple.group('alias')
                alias_name = unquote(alias)[0].lower() if alias else None

                if ordinal in group_ordinals or column.lower() in group_names:
                    continue
                if alias_name and alias_name in group_names:
                    continue
                if column not in missing:
                    missing.append(column)

        return missing

    # =========================================================================
    # TIER 3: SCHEMA
    # =========================================================================

    def check_against_schema(self, sql: str, schema: SchemaSource) -> ValidationOutcome:
        """
        Resolve table references against a schema snapshot and fuzzily correct
        column typos.

        Table existence is a hard gate. Column misses are tolerated here.
        """
        tables = schema.tables() if isinstance(schema, SchemaProvider) else list(schema)
        known = [t.name for t in tables]
        known_by_lower: Dict[str, TableDescriptor] = {t.name.lower(): t for t in tables}

        corrections: List[str] = []
        replacements = []
        resolved: List[TableDescriptor] = []
        masked = mask_string_literals(sql)

        for ref in find_table_references(sql):
            table = known_by_lower.get(ref.name.lower())
            if table is None:
                table = self._match_table_suffix(ref.name, tables)
                if table is None:
                    return self._reject(3, ErrorKind.SCHEMA_RESOLUTION, self._unknown_table_message(ref.name, known))

                replacements.append((ref.start, ref.end, render_identifier(table.name, ref.quoted)))
                replacements.extend(self._qualifier_replacements(masked, ref.name, table.name))
                corrections.append(f'Table: "{ref.name}" -> "{table.name}" (table name suffix match)')
                logger.info(f"[TIER3] Resolved table '{ref.name}' -> '{table.name}' (suffix match)")

            if table not in resolved:
                resolved.append(table)

        corrected = apply_replacements(sql, self._dedupe(replacements))

        resolution = resolve(
            corrected,
            known,
            {t.name: t.column_names for t in resolved},
        )
        corrected = resolution.sql
        corrections.extend(resolution.mappings)

        if '..' in mask_string_literals(corrected):
            return self._reject(3, ErrorKind.SCHEMA_RESOLUTION, DOUBLE_DOT_MESSAGE)

        return ValidationOutcome(
            valid=True,
            tier=3,
            corrected_sql=corrected if corrected != sql else None,
            corrections=corrections,
        )

    def _match_table_suffix(self, ref: str, tables: List[TableDescriptor]) -> Optional[TableDescriptor]:
        """sales_data <-> sales_data_1699999999 (either direction, '_' separated)."""
        ref_lower = ref.lower()
        for table in tables:
            known = table.name.lower()
            if known.startswith(ref_lower + '_') or ref_lower.startswith(known + '_'):
                return table
        return None

    def _qualifier_replacements(self, masked: str, ref: str, target: str):
        pattern = re.compile(
            r'(?<![\w."$])(' + re.escape(ref) + r'|"' + re.escape(ref) + r'")(?=\s*\.)',
            re.IGNORECASE
        )
        for match in pattern.finditer(masked):
            quoted = match.group(1).startswith('"')
            yield match.start(1), match.end(1), render_identifier(target, quoted)

    @staticmethod
    def _dedupe(replacements):
        seen = set()
        unique = []
        for start, end, text in replacements:
            if (start, end) in seen:
                continue
            seen.add((start, end))
            unique.append((start, end, text))
        return unique

    @staticmethod
    def _unknown_table_message(ref: str, known: List[str]) -> str:
        if not known:
            return f'Table "{ref}" does not exist in the database schema. No tables are available.'
        available = ', '.join(known[:10])
        more = f" and {len(known) - 10} more" if len(known) > 10 else ""
        return (
            f'Table "{ref}" does not exist in the database schema. '
            f'Available tables: {available}{more}.'
        )

    # =========================================================================
    # CHAIN
    # =========================================================================

    def validate(self, sql: str, schema: SchemaSource) -> ValidationOutcome:
        """Run Tier 1 -> Tier 2 -> Tier 3 with a single schema snapshot."""
        tier1 = self.check_syntax_and_safety(sql)
        if not tier1.valid:
            return tier1

        tier2 = self.check_structure(sql)
        if not tier2.valid:
            return tier2

        tables = schema.tables() if isinstance(schema, SchemaProvider) else list(schema)
        tier3 = self.check_against_schema(sql, tables)
        if tier3.valid:
            logger.debug("[TIER3] SQL passed all validation tiers")
        return tier3

    def _reject(self, tier: int, kind: ErrorKind, message: str) -> ValidationOutcome:
        logger.warning(f"[TIER{tier}] Rejected: {message}")
        return ValidationOutcome(valid=False, tier=tier, error=message, error_kind=kind)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def check_syntax_and_safety(sql: str) -> ValidationOutcome:
    return SQLSafetyValidator().check_syntax_and_safety(sql)


def check_structure(sql: str, max_rows: int = MAX_ROWS) -> ValidationOutcome:
    return SQLSafetyValidator(max_rows).check_structure(sql)


def check_against_schema(sql: str, schema: SchemaSource) -> ValidationOutcome:
    return SQLSafetyValidator().check_against_schema(sql, schema)


def validate_sql(sql: str, schema: SchemaSource, max_rows: int = MAX_ROWS) -> ValidationOutcome:
    """Canonical entry point: all three tiers, fail-fast."""
    return SQLSafetyValidator(max_rows).validate(sql, schema)


def create_sql_validator(max_rows: int = MAX_ROWS) -> SQLSafetyValidator:
    """Factory function to create a validator."""
    return SQLSafetyValidator(max_rows)
