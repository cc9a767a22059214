"""
SQLGuard - Post-Validation Column Check
=======================================

PURPOSE:
The explicit second phase after Tier 3. Tier 3 treats table existence as a
hard gate but only best-effort-corrects columns; this module catches the
column references that are still unknown after fuzzy resolution, so the
query is rejected with the list of valid columns instead of failing at the
driver.

WHAT IS CHECKED:
- qualifier.column references (against the qualifier's table)
- "quoted" identifiers that are not values or aliases
- bare SELECT-list columns
- left-hand sides of WHERE comparisons
- GROUP BY and ORDER BY columns

WHAT IS IGNORED:
- keywords, function names, CAST type names
- select aliases and subquery / window aliases (rn, row_num, rank, dense_rank)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Union

from schema_provider import SchemaProvider, TableDescriptor
from sql_tokens import (
    QUALIFIED_REFERENCE_PATTERN,
    RESERVED_WORDS,
    find_clause_end,
    find_table_references,
    iter_bare_tokens,
    mask_quoted_identifiers,
    mask_string_literals,
    select_item_alias,
    select_item_expression_end,
    select_list_spans,
    split_top_level,
    unquote,
)

logger = logging.getLogger(__name__)

WINDOW_ALIASES = {'rn', 'row_num', 'rank', 'dense_rank'}


@dataclass
class ColumnCheckResult:
    """
    Result of the post-validation column check.

    Attributes:
        valid: True when every referenced table and column exists
        unknown_tables: Referenced tables missing from the schema
        unknown_columns: Referenced columns missing from the referenced tables
        error: Human-readable error listing what is available (if invalid)
    """
    valid: bool
    unknown_tables: List[str] = field(default_factory=list)
    unknown_columns: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ColumnExistenceChecker:
    """
    Verifies that every column the SQL references exists in the schema.

    IMPORTANT:
    - Comparison is case-insensitive (the fuzzy resolver owns casing)
    - Column names are collected from the referenced tables only; if the SQL
      references no known table, every table's columns are allowed
    """

    QUOTED_PATTERN = re.compile(r'"([^"]+)"')
    SUBQUERY_ALIAS_PATTERN = re.compile(r'\)\s+(?:AS\s+)?("[^"]+"|[A-Za-z_][\w$]*)', re.IGNORECASE)
    AS_ALIAS_PATTERN = re.compile(r'\bAS\s+("[^"]+"|[A-Za-z_][\w$]*)', re.IGNORECASE)
    WHERE_LHS_PATTERN = re.compile(
        r'(?<![\w.$"\x00])([A-Za-z_][\w$]*)'
        r'(?=\s*(?:=|<>|!=|<=|>=|<|>|\bNOT\s+IN\b|\bIN\b|\bI?LIKE\b|\bBETWEEN\b|\bIS\b))',
        re.IGNORECASE
    )

    def __init__(self, tables: Iterable[TableDescriptor]):
        self.tables = list(tables)
        self.tables_by_lower: Dict[str, TableDescriptor] = {t.name.lower(): t for t in self.tables}

    def check(self, sql: str) -> ColumnCheckResult:
        if not sql or not sql.strip():
            return ColumnCheckResult(valid=True)

        masked = mask_string_literals(sql)
        masked_all = mask_quoted_identifiers(masked)

        refs = find_table_references(sql)
        aliases: Dict[str, Optional[TableDescriptor]] = {}
        unknown_tables: List[str] = []
        referenced: List[TableDescriptor] = []

        for ref in refs:
            table = self.tables_by_lower.get(ref.name.lower())
            if table is None and ref.name not in unknown_tables:
                unknown_tables.append(ref.name)
            if table is not None and table not in referenced:
                referenced.append(table)
            aliases[ref.name.lower()] = table
            if ref.alias:
                aliases[ref.alias.lower()] = table

        ignored = self._ignored_names(masked, masked_all)
        ignored.update(aliases.keys())

        available = self._column_names(referenced or self.tables)
        available_lower = {c.lower() for c in available}

        candidates: List[str] = []
        candidates.extend(self._quoted_columns(masked, ignored))
        candidates.extend(self._select_columns(masked_all))
        candidates.extend(self._where_columns(masked_all))
        candidates.extend(self._group_order_columns(masked_all))

        unknown_columns: List[str] = []
        for name in candidates:
            lowered = name.lower()
            if lowered in ignored or lowered in RESERVED_WORDS or len(name) < 2:
                continue
            if lowered in available_lower:
                continue
            if name not in unknown_columns:
                unknown_columns.append(name)

        # qualifier.column is checked against that table only; unknown qualifiers
        # (subquery aliases) are skipped
        unknown_columns.extend(
            c for c in self._qualified_misses(masked, aliases) if c not in unknown_columns
        )

        if not unknown_tables and not unknown_columns:
            return ColumnCheckResult(valid=True)

        error = self._build_error(unknown_tables, unknown_columns, available)
        logger.warning(f"[COLUMN_CHECK] {error}")
        return ColumnCheckResult(
            valid=False,
            unknown_tables=unknown_tables,
            unknown_columns=unknown_columns,
            error=error,
        )

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def _ignored_names(self, masked: str, masked_all: str) -> Set[str]:
        ignored = set(WINDOW_ALIASES)
        for match in self.AS_ALIAS_PATTERN.finditer(masked):
            ignored.add(unquote(match.group(1))[0].lower())
        for match in self.SUBQUERY_ALIAS_PATTERN.finditer(masked):
            ignored.add(unquote(match.group(1))[0].lower())
        for list_start, list_end in select_list_spans(masked_all):
            for item_start, item_end in split_top_level(masked_all, list_start, list_end):
                alias = select_item_alias(masked, item_start, item_end)
                if alias:
                    ignored.add(alias.lower())
        return ignored

    def _qualified_misses(self, masked: str, aliases) -> List[str]:
        misses = []
        for match in QUALIFIED_REFERENCE_PATTERN.finditer(masked):
            if re.search(r'\b(?:FROM|JOIN)\s+$', masked[:match.start()], re.IGNORECASE):
                continue
            if re.match(r'\s*\(', masked[match.end():]):
                continue
            qualifier = unquote(match.group(1))[0].lower()
            column = unquote(match.group(2))[0]
            table = aliases.get(qualifier)
            if table is None:
                continue
            if table.get_column(column) is None and column not in misses:
                misses.append(column)
        return misses

    def _quoted_columns(self, masked: str, ignored: Set[str]) -> List[str]:
        names = []
        for match in self.QUOTED_PATTERN.finditer(masked):
            before = masked[:match.start()]
            after = masked[match.end():]
            if before.rstrip().endswith('.') or after.lstrip().startswith('.'):
                continue
            if re.search(r'\b(?:FROM|JOIN|AS)\s+$', before, re.IGNORECASE):
                continue
            name = match.group(1)
            if name.lower() not in ignored:
                names.append(name)
        return names

    def _select_columns(self, masked_all: str) -> List[str]:
        names = []
        for list_start, list_end in select_list_spans(masked_all):
            for item_start, item_end in split_top_level(masked_all, list_start, list_end):
                expr_end = select_item_expression_end(masked_all, item_start, item_end)
                names.extend(token for _, _, token in iter_bare_tokens(masked_all, item_start, expr_end))
        return names

    def _where_columns(self, masked_all: str) -> List[str]:
        names = []
        for match in re.finditer(r'\b(?:WHERE|HAVING)\b', masked_all, re.IGNORECASE):
            start = match.end()
            end = find_clause_end(masked_all, start, ('GROUP', 'ORDER', 'HAVING', 'LIMIT', 'OFFSET', 'UNION'))
            for lhs in self.WHERE_LHS_PATTERN.finditer(masked_all, start, end):
                token_end = lhs.end(1)
                if re.match(r'\s*[.(]', masked_all[token_end:end]):
                    continue
                names.append(lhs.group(1))
        return names

    def _group_order_columns(self, masked_all: str) -> List[str]:
        names = []
        for match in re.finditer(r'\b(?:GROUP|ORDER)\s+BY\b', masked_all, re.IGNORECASE):
            start = match.end()
            end = find_clause_end(masked_all, start, ('HAVING', 'ORDER', 'LIMIT', 'OFFSET', 'UNION', 'WINDOW'))
            names.extend(token for _, _, token in iter_bare_tokens(masked_all, start, end))
        return names

    @staticmethod
    def _column_names(tables: Iterable[TableDescriptor]) -> List[str]:
        names: List[str] = []
        for table in tables:
            for name in table.column_names:
                if name not in names:
                    names.append(name)
        return names

    def _build_error(self, unknown_tables: List[str], unknown_columns: List[str], available: List[str]) -> str:
        if unknown_tables:
            known = ', '.join(t.name for t in self.tables) or 'none'
            return f"Table(s) not found: {', '.join(unknown_tables)}. Available tables: {known}."
        return (
            f"Column(s) not found: {', '.join(unknown_columns)}. "
            f"Available columns: {', '.join(available) or 'none'}."
        )


def check_columns(
    sql: str,
    tables: Union[SchemaProvider, Iterable[TableDescriptor]],
) -> ColumnCheckResult:
    """Convenience function: run the column check against a schema snapshot."""
    snapshot = tables.tables() if isinstance(tables, SchemaProvider) else list(tables)
    return ColumnExistenceChecker(snapshot).check(sql)


def create_column_checker(tables: Iterable[TableDescriptor]) -> ColumnExistenceChecker:
    """Factory function to create a column checker for one schema snapshot."""
    return ColumnExistenceChecker(tables)
