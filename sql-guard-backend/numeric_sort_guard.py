"""
SQLGuard - Numeric-Sort Safety Net
==================================

PROBLEM STATEMENT:
Uploaded spreadsheets often land numeric-looking columns as text. For
"top 10 most expensive products", ORDER BY "Price" DESC then sorts
lexicographically ('99' > '100') and the answer is silently wrong.

SOLUTION:
When the user's question carries top/bottom intent, rewrite ORDER BY targets
that are (or look) numeric to CAST(<target> AS DOUBLE PRECISION), keeping
ASC/DESC and NULLS FIRST/LAST.

GATING:
- Only fires on whole-word top/bottom/superlative phrasing
- Never fires when the ORDER BY already contains a CAST
- Never touches not_available responses
"""

import logging
import re
from typing import Dict, List, Optional, Sequence

from guard_errors import is_not_available
from schema_provider import ColumnDescriptor, GenericType
from sql_tokens import (
    apply_replacements,
    find_clause_end,
    mask_string_literals,
    split_top_level,
    unquote,
)

logger = logging.getLogger(__name__)

TOP_BOTTOM_KEYWORDS = [
    'top', 'highest', 'most expensive', 'largest', 'biggest',
    'lowest', 'smallest', 'cheapest', 'least expensive', 'bottom',
]

NUMERIC_NAME_HINTS = {
    'price', 'amount', 'total', 'revenue', 'cost', 'score', 'rating',
    'quantity', 'stock', 'count', 'sum', 'avg', 'max', 'min',
}

# Declared types a name hint may override (dates and booleans never cast)
_CASTABLE_TYPES = {GenericType.TEXT, GenericType.INTEGER, GenericType.DECIMAL}

_TOP_BOTTOM_PATTERN = re.compile(
    r'\b(' + '|'.join(re.escape(k).replace(r'\ ', r'\s+') for k in TOP_BOTTOM_KEYWORDS) + r')\b',
    re.IGNORECASE
)

_ORDER_BY_PATTERN = re.compile(r'\bORDER\s+BY\b', re.IGNORECASE)

_ORDER_ITEM_PATTERN = re.compile(
    r'''
    ^(?P<target>
        (?:(?:"[^"]+"|[A-Za-z_][\w$]*)\s*\.\s*)?
        (?:"[^"]+"|[A-Za-z_][\w$]*)
    )
    (?P<suffix>(?:\s+(?:ASC|DESC))?(?:\s+NULLS\s+(?:FIRST|LAST))?)$
    ''',
    re.IGNORECASE | re.VERBOSE
)

_SELECT_ALIAS_PATTERN = re.compile(r'\bAS\s+("[^"]+"|[A-Za-z_][\w$]*)', re.IGNORECASE)


def is_top_or_bottom_query(user_query: Optional[str]) -> bool:
    """True when the question asks for top/bottom/superlative results."""
    if not user_query:
        return False
    return bool(_TOP_BOTTOM_PATTERN.search(user_query))


def _name_tokens(name: str) -> List[str]:
    """'UnitPrice' -> ['unit', 'price']; 'total_sales' -> ['total', 'sales']"""
    return [t.lower() for t in re.findall(r'[A-Z]?[a-z]+|[A-Z]+(?![a-z])|\d+', name)]


def _is_numeric_target(name: str, columns_by_name: Dict[str, ColumnDescriptor]) -> bool:
    column = columns_by_name.get(name.lower())
    if column is not None and column.type.is_numeric:
        return True
    if column is not None and column.type not in _CASTABLE_TYPES:
        return False
    return any(token in NUMERIC_NAME_HINTS for token in _name_tokens(name))


def _order_by_clauses(masked: str):
    """(start, end) of every ORDER BY list that is not inside parentheses."""
    for match in _ORDER_BY_PATTERN.finditer(masked):
        before = masked[:match.start()]
        if before.count('(') != before.count(')'):
            continue
        start = match.end()
        end = find_clause_end(masked, start, ('LIMIT', 'OFFSET', 'FETCH'))
        yield start, end


def _plan_rewrites(sql: str, columns: Sequence[ColumnDescriptor]):
    masked = mask_string_literals(sql)
    columns_by_name = {col.name.lower(): col for col in columns}
    select_aliases = {unquote(m.group(1))[0].lower() for m in _SELECT_ALIAS_PATTERN.finditer(masked)}

    rewrites = []
    for clause_start, clause_end in _order_by_clauses(masked):
        clause = masked[clause_start:clause_end]
        if re.search(r'\bCAST\b|::', clause, re.IGNORECASE):
            continue

        for item_start, item_end in split_top_level(masked, clause_start, clause_end):
            item = sql[item_start:item_end]
            match = _ORDER_ITEM_PATTERN.match(item)
            if not match:
                continue

            target = match.group('target')
            name = unquote(re.split(r'\s*\.\s*', target)[-1])[0]
            if name.lower() in select_aliases and name.lower() not in columns_by_name:
                continue
            if not _is_numeric_target(name, columns_by_name):
                continue

            replacement = f"CAST({target} AS DOUBLE PRECISION){match.group('suffix')}"
            rewrites.append((item_start, item_end, replacement, target))
    return rewrites


def find_uncast_numeric_targets(sql: str, columns: Sequence[ColumnDescriptor]) -> List[str]:
    """ORDER BY targets that should be cast for numeric ordering."""
    if not sql:
        return []
    return [target for _, _, _, target in _plan_rewrites(sql, columns)]


def apply_if_top_bottom_intent(
    sql: str,
    user_query: Optional[str],
    columns: Sequence[ColumnDescriptor],
) -> str:
    """
    Force numeric ordering for top/bottom questions.

    Args:
        sql: Validated SQL
        user_query: The user's natural-language question
        columns: Columns of the queried table(s)

    Returns:
        SQL with numeric ORDER BY targets cast, or the input unchanged
    """
    if not sql or is_not_available(sql):
        return sql
    if not is_top_or_bottom_query(user_query):
        return sql

    rewrites = _plan_rewrites(sql, columns)
    if not rewrites:
        logger.debug("[SAFETY_NET] Top/bottom intent but no uncast numeric ORDER BY target")
        return sql

    fixed = apply_replacements(sql, [(start, end, text) for start, end, text, _ in rewrites])
    logger.info(
        f"[SAFETY_NET] Cast ORDER BY target(s) to DOUBLE PRECISION: "
        f"{', '.join(target for _, _, _, target in rewrites)}"
    )
    return fixed
