"""
SQLGuard - Fuzzy SQL Resolver
=============================

PURPOSE:
Repair near-miss identifiers in model-generated SQL before execution.

PROBLEM STATEMENT:
- NL-SQL models regularly misspell or mis-case identifiers
- Example: SELECT "city", stat FROM Cities  (schema: cities("City", "State"))
- PostgreSQL rejects these, and the user sees a cryptic driver error

SOLUTION:
Walk the SQL text, find identifier positions, and run each through the
Identifier Similarity Engine against the schema:
1. FROM/JOIN table names        -> known tables (aliases recorded)
2. qualifier.column references  -> columns of the qualifier's table
3. "quoted" identifiers         -> columns of the referenced tables
4. bare SELECT-list tokens      -> columns of the referenced tables

WHAT THIS IS NOT:
- NOT a parser (regex over masked text)
- NOT a structural rewrite: only identifier spelling, casing and quoting change
- NEVER touches string literals or SQL keywords

Running resolve() on its own output is a no-op.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from identifier_matcher import match_name
from sql_tokens import (
    QUALIFIED_REFERENCE_PATTERN,
    RESERVED_WORDS,
    apply_replacements,
    effective_identifier,
    find_table_references,
    iter_bare_tokens,
    mask_quoted_identifiers,
    mask_string_literals,
    render_identifier,
    select_item_alias,
    select_item_expression_end,
    select_list_spans,
    split_top_level,
    unquote,
)

logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    """
    Result of fuzzy identifier resolution.

    Attributes:
        sql: SQL with corrected identifiers (unchanged if nothing matched)
        mappings: One human-readable line per substitution
    """
    sql: str
    mappings: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.mappings)


class FuzzySQLResolver:
    """
    Rewrites near-miss table and column names against a schema snapshot.

    IMPORTANT:
    - Keywords, function names and type names are never looked up
    - Tokens after AS (aliases) and tokens followed by '(' are skipped
    - Bare SELECT tokens naming an alias declared anywhere in the query are skipped
    - A corrected name is quoted when it needs quoting or the original was quoted
    """

    QUOTED_PATTERN = re.compile(r'"([^"]+)"')
    AS_ALIAS_PATTERN = re.compile(r'\bAS\s+("[^"]+"|[A-Za-z_][\w$]*)', re.IGNORECASE)
    SUBQUERY_ALIAS_PATTERN = re.compile(r'\)\s+(?:AS\s+)?("[^"]+"|[A-Za-z_][\w$]*)', re.IGNORECASE)

    def __init__(self, known_tables: Sequence[str], columns_by_table: Dict[str, List[str]]):
        self.known_tables = list(known_tables)
        self.columns_by_table = {name.lower(): list(cols) for name, cols in columns_by_table.items()}

    def resolve(self, sql: str) -> ResolutionResult:
        if not sql or not sql.strip():
            return ResolutionResult(sql=sql)

        mappings: List[str] = []
        context = sql

        sql, aliases, referenced = self._resolve_tables(sql, context, mappings)
        sql = self._resolve_qualified_columns(sql, context, aliases, mappings)
        sql = self._resolve_quoted_columns(sql, context, aliases, referenced, mappings)
        sql = self._resolve_select_tokens(sql, context, aliases, referenced, mappings)

        if mappings:
            logger.info(f"[FUZZY] Applied {len(mappings)} identifier correction(s)")
            for line in mappings:
                logger.debug(f"[FUZZY]   {line}")

        return ResolutionResult(sql=sql, mappings=mappings)

    # -------------------------------------------------------------------------
    # Stage 1: tables
    # -------------------------------------------------------------------------

    def _resolve_tables(self, sql: str, context: str, mappings: List[str]):
        aliases: Dict[str, str] = {}
        referenced: List[str] = []
        replacements = []

        for ref in find_table_references(sql):
            result = match_name(ref.name, self.known_tables, context)
            resolved = result.matched or ref.name

            if result.matched and effective_identifier(ref.name, ref.quoted) != result.matched:
                replacements.append((ref.start, ref.end, render_identifier(result.matched, ref.quoted)))
                mappings.append(f'Table: "{ref.name}" -> "{result.matched}" ({result.reason})')

            aliases[ref.name.lower()] = resolved
            aliases[resolved.lower()] = resolved
            if ref.alias:
                aliases[ref.alias.lower()] = resolved
            if resolved not in referenced:
                referenced.append(resolved)

        return apply_replacements(sql, replacements), aliases, referenced

    # -------------------------------------------------------------------------
    # Stage 2: qualifier.column
    # -------------------------------------------------------------------------

    def _resolve_qualified_columns(self, sql, context, aliases, mappings) -> str:
        masked = mask_string_literals(sql)
        replacements = []

        for match in QUALIFIED_REFERENCE_PATTERN.finditer(masked):
            # schema.table in a FROM/JOIN position is not a column reference
            if re.search(r'\b(?:FROM|JOIN)\s+$', masked[:match.start()], re.IGNORECASE):
                continue
            if re.match(r'\s*\(', masked[match.end():]):
                continue

            qualifier, qualifier_quoted = unquote(match.group(1))
            column, column_quoted = unquote(match.group(2))

            table = aliases.get(qualifier.lower())
            if table is None:
                if qualifier.lower() in RESERVED_WORDS:
                    continue
                table_result = match_name(qualifier, self.known_tables, context)
                if not table_result.matched:
                    continue
                table = table_result.matched
                if effective_identifier(qualifier, qualifier_quoted) != table:
                    replacements.append((
                        match.start(1), match.end(1),
                        render_identifier(table, qualifier_quoted),
                    ))
                    mappings.append(f'Table: "{qualifier}" -> "{table}" ({table_result.reason})')

            if not column_quoted and column.lower() in RESERVED_WORDS:
                continue
            columns = self._columns_for([table])
            if not columns:
                continue
            result = match_name(column, columns, context)
            if result.matched and effective_identifier(column, column_quoted) != result.matched:
                replacements.append((
                    match.start(2), match.end(2),
                    render_identifier(result.matched, column_quoted),
                ))
                mappings.append(f'Column: "{column}" -> "{result.matched}" ({result.reason})')

        return apply_replacements(sql, replacements)

    # -------------------------------------------------------------------------
    # Stage 3: "quoted" identifiers
    # -------------------------------------------------------------------------

    def _resolve_quoted_columns(self, sql, context, aliases, referenced, mappings) -> str:
        masked = mask_string_literals(sql)
        declared_aliases = self._declared_aliases(masked)
        columns = self._columns_for(referenced) or self._all_columns()
        replacements = []

        for match in self.QUOTED_PATTERN.finditer(masked):
            name = match.group(1)
            before = masked[:match.start()]
            after = masked[match.end():]

            # Part of a qualified reference (handled in stage 2)
            if before.rstrip().endswith('.') or after.lstrip().startswith('.'):
                continue
            if re.search(r'\b(?:FROM|JOIN|AS)\s+$', before, re.IGNORECASE):
                continue
            if name.lower() in aliases or name in declared_aliases:
                continue
            if any(t.lower() == name.lower() for t in self.known_tables):
                continue

            result = match_name(name, columns, context)
            if result.matched and result.matched != name:
                replacements.append((match.start(), match.end(), f'"{result.matched}"'))
                mappings.append(f'Column: "{name}" -> "{result.matched}" ({result.reason})')

        return apply_replacements(sql, replacements)

    # -------------------------------------------------------------------------
    # Stage 4: bare SELECT-list tokens
    # -------------------------------------------------------------------------

    def _resolve_select_tokens(self, sql, context, aliases, referenced, mappings) -> str:
        literal_masked = mask_string_literals(sql)
        masked = mask_quoted_identifiers(literal_masked)
        columns = self._columns_for(referenced) or self._all_columns()
        if not columns:
            return sql

        # aliases declared anywhere in the query name its outputs, not base columns
        column_names = {c.lower() for c in columns}
        output_names = self._output_names(literal_masked, masked) - column_names

        replacements = []
        seen: Set[Tuple[int, int]] = set()

        for list_start, list_end in select_list_spans(masked):
            for item_start, item_end in split_top_level(masked, list_start, list_end):
                expr_end = select_item_expression_end(masked, item_start, item_end)
                for start, end, token in iter_bare_tokens(masked, item_start, expr_end):
                    if (start, end) in seen:
                        continue
                    seen.add((start, end))
                    lowered = token.lower()
                    if lowered in RESERVED_WORDS or lowered in aliases or len(token) < 2:
                        continue
                    if lowered in output_names:
                        continue
                    result = match_name(token, columns, context)
                    if result.matched and effective_identifier(token, False) != result.matched:
                        replacements.append((start, end, render_identifier(result.matched)))
                        mappings.append(f'Column: "{token}" -> "{result.matched}" ({result.reason})')

        return apply_replacements(sql, replacements)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _columns_for(self, tables: Sequence[str]) -> List[str]:
        columns: List[str] = []
        for table in tables:
            for col in self.columns_by_table.get(table.lower(), []):
                if col not in columns:
                    columns.append(col)
        return columns

    def _all_columns(self) -> List[str]:
        return self._columns_for(list(self.columns_by_table.keys()))

    def _declared_aliases(self, masked: str) -> Set[str]:
        return {unquote(m.group(1))[0] for m in self.AS_ALIAS_PATTERN.finditer(masked)}

    def _output_names(self, literal_masked: str, masked: str) -> Set[str]:
        """Lowercased aliases the query declares for its own outputs."""
        names = set()
        for pattern in (self.AS_ALIAS_PATTERN, self.SUBQUERY_ALIAS_PATTERN):
            for match in pattern.finditer(literal_masked):
                names.add(unquote(match.group(1))[0].lower())
        for list_start, list_end in select_list_spans(masked):
            for item_start, item_end in split_top_level(masked, list_start, list_end):
                alias = select_item_alias(literal_masked, item_start, item_end)
                if alias:
                    names.add(alias.lower())
        return names


def resolve(
    sql: str,
    known_tables: Sequence[str],
    columns_by_table: Dict[str, List[str]],
) -> ResolutionResult:
    """Convenience function: resolve identifiers in one call."""
    return FuzzySQLResolver(known_tables, columns_by_table).resolve(sql)


def create_fuzzy_resolver(
    known_tables: Sequence[str],
    columns_by_table: Optional[Dict[str, List[str]]] = None,
) -> FuzzySQLResolver:
    """Factory function to create a resolver for one schema snapshot."""
    return FuzzySQLResolver(known_tables, columns_by_table or {})
