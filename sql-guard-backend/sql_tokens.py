"""
SQLGuard - SQL Text Helpers
===========================

Shared regex-level lexing used by the validators, the fuzzy resolver and the
column checker. This is NOT a SQL parser: it only knows enough about quoting,
parenthesis depth and FROM/JOIN positions to keep the heuristics honest.

MASKING:
String literals are masked with NUL characters of the same length, so match
positions in the masked text are valid positions in the original text and a
literal like 'DROP TABLE x' can never trip a keyword check.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

MASK_CHAR = "\x00"

# =============================================================================
# WORD LISTS
# =============================================================================

SQL_KEYWORDS: Set[str] = {
    'select', 'from', 'where', 'group', 'by', 'order', 'having', 'limit',
    'offset', 'as', 'and', 'or', 'not', 'in', 'is', 'null', 'like', 'ilike',
    'between', 'case', 'when', 'then', 'else', 'end', 'join', 'inner', 'left',
    'right', 'full', 'outer', 'cross', 'natural', 'lateral', 'on', 'using',
    'distinct', 'all', 'union', 'intersect', 'except', 'with', 'recursive',
    'asc', 'desc', 'nulls', 'first', 'last', 'true', 'false', 'exists', 'any',
    'some', 'over', 'partition', 'window', 'rows', 'range', 'preceding',
    'following', 'unbounded', 'current', 'row', 'filter', 'within', 'insert',
    'into', 'values', 'update', 'set', 'delete', 'returning', 'create',
    'alter', 'drop', 'truncate', 'table', 'view', 'index', 'at', 'zone',
    'fetch', 'next', 'only', 'similar', 'escape', 'collate', 'default',
}

SQL_FUNCTIONS: Set[str] = {
    'count', 'sum', 'avg', 'min', 'max', 'stddev', 'stddev_pop',
    'stddev_samp', 'variance', 'var_pop', 'var_samp', 'coalesce', 'nullif',
    'cast', 'extract', 'date_trunc', 'date_part', 'to_char', 'to_date',
    'to_timestamp', 'round', 'floor', 'ceil', 'ceiling', 'abs', 'length',
    'lower', 'upper', 'trim', 'ltrim', 'rtrim', 'substring', 'substr',
    'concat', 'replace', 'now', 'current_date', 'current_time',
    'current_timestamp', 'row_number', 'rank', 'dense_rank', 'percent_rank',
    'cume_dist', 'lag', 'lead', 'ntile', 'first_value', 'last_value',
    'string_agg', 'array_agg', 'json_agg', 'greatest', 'least', 'position',
    'split_part', 'percentile_cont', 'percentile_disc', 'mode', 'age',
    'year', 'month', 'week', 'day', 'hour', 'minute', 'second', 'quarter',
    'dow', 'doy', 'epoch',
}

SQL_TYPE_NAMES: Set[str] = {
    'integer', 'int', 'int2', 'int4', 'int8', 'bigint', 'smallint', 'numeric',
    'decimal', 'real', 'double', 'precision', 'float', 'float4', 'float8',
    'text', 'varchar', 'char', 'character', 'varying', 'boolean', 'bool',
    'date', 'timestamp', 'timestamptz', 'time', 'interval', 'json', 'jsonb',
    'uuid', 'money',
}

RESERVED_WORDS: Set[str] = SQL_KEYWORDS | SQL_FUNCTIONS | SQL_TYPE_NAMES

AGGREGATE_FUNCTIONS: Set[str] = {
    'count', 'sum', 'avg', 'max', 'min', 'stddev', 'variance',
}

# Functions whose argument list may contain a FROM that is not a table source
_FROM_ARGUMENT_FUNCTIONS = {'extract', 'substring', 'trim', 'overlay', 'position'}

# FROM/JOIN keyword followed by an optional schema qualifier and a table name
_TABLE_SOURCE_PATTERN = re.compile(
    r'''
    \b(?P<keyword>FROM|JOIN)\s+
    (?:(?P<schema>"[^"]+"|[A-Za-z_][\w$]*)\s*\.\s*)?
    (?P<table>"[^"]+"|[A-Za-z_][\w$]*)
    ''',
    re.IGNORECASE | re.VERBOSE
)

_NEXT_TABLE_PATTERN = re.compile(
    r'''
    \s*,\s*
    (?:(?P<schema>"[^"]+"|[A-Za-z_][\w$]*)\s*\.\s*)?
    (?P<table>"[^"]+"|[A-Za-z_][\w$]*)
    ''',
    re.VERBOSE
)

_ALIAS_PATTERN = re.compile(
    r'\s+(?:AS\s+)?("[^"]+"|[A-Za-z_][\w$]*)',
    re.IGNORECASE
)

_STRING_LITERAL_PATTERN = re.compile(r"'(?:[^']|'')*'")
_QUOTED_IDENTIFIER_PATTERN = re.compile(r'"[^"]*"')


@dataclass
class TableReference:
    """
    One FROM/JOIN table source found in SQL text.

    Attributes:
        name: Table name without quotes or schema qualifier
        schema: Schema qualifier, if any
        alias: Alias declared after the table, if any
        quoted: Whether the table name was written in double quotes
        start: Offset of the table token (including quotes) in the SQL
        end: End offset of the table token
        keyword: "FROM" or "JOIN" (uppercased)
    """
    name: str
    schema: Optional[str]
    alias: Optional[str]
    quoted: bool
    start: int
    end: int
    keyword: str


# =============================================================================
# MASKING
# =============================================================================

def _mask_match(match: re.Match) -> str:
    text = match.group(0)
    return text[0] + MASK_CHAR * (len(text) - 2) + text[-1]


def mask_string_literals(sql: str) -> str:
    """Replace the contents of '...' literals with NULs (same length)."""
    return _STRING_LITERAL_PATTERN.sub(_mask_match, sql)


def mask_quoted_identifiers(sql: str) -> str:
    """Replace the contents of "..." identifiers with NULs (same length)."""
    return _QUOTED_IDENTIFIER_PATTERN.sub(_mask_match, sql)


def unquote(identifier: str) -> Tuple[str, bool]:
    """'"City"' -> ('City', True); 'city' -> ('city', False)"""
    if len(identifier) >= 2 and identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1], True
    return identifier, False


def needs_quoting(name: str) -> bool:
    """PostgreSQL folds unquoted names to lowercase."""
    return bool(re.search(r'[^a-z0-9_]', name)) or name[:1].isdigit()


def render_identifier(name: str, force_quotes: bool = False) -> str:
    if force_quotes or needs_quoting(name):
        return f'"{name}"'
    return name


def effective_identifier(name: str, quoted: bool) -> str:
    """Name as the database sees it: quoted names keep case, others fold."""
    return name if quoted else name.lower()


# =============================================================================
# STRUCTURE
# =============================================================================

def split_top_level(text: str, start: int = 0, end: Optional[int] = None) -> List[Tuple[int, int]]:
    """
    Split text[start:end] on commas at parenthesis depth 0.

    Returns (start, end) offsets of each item, whitespace-trimmed, so callers
    can rewrite items in place.
    """
    end = len(text) if end is None else end
    spans = []
    depth = 0
    item_start = start

    for pos in range(start, end):
        char = text[pos]
        if char == '(':
            depth += 1
        elif char == ')':
            depth -= 1
        elif char == ',' and depth == 0:
            spans.append(item_start)
            spans.append(pos)
            item_start = pos + 1
    spans.append(item_start)
    spans.append(end)

    items = []
    for i in range(0, len(spans), 2):
        s, e = spans[i], spans[i + 1]
        while s < e and text[s].isspace():
            s += 1
        while e > s and text[e - 1].isspace():
            e -= 1
        if s < e:
            items.append((s, e))
    return items


def find_clause_end(masked: str, start: int, terminators: Tuple[str, ...]) -> int:
    """
    Offset of the first terminator keyword at the same parenthesis depth as
    `start`, or the end of the text (minus a trailing semicolon).
    """
    pattern = re.compile(r'\b(' + '|'.join(terminators) + r')\b', re.IGNORECASE)
    depth = 0
    pos = start
    length = len(masked)
    while pos < length:
        char = masked[pos]
        if char == '(':
            depth += 1
        elif char == ')':
            if depth == 0:
                return pos
            depth -= 1
        elif char == ';' and depth == 0:
            return pos
        elif depth == 0 and (pos == 0 or not (masked[pos - 1].isalnum() or masked[pos - 1] == '_')):
            match = pattern.match(masked, pos)
            if match:
                return pos
        pos += 1
    return length


def select_list_spans(masked: str) -> List[Tuple[int, int]]:
    """(start, end) of every SELECT list (text between SELECT and its FROM)."""
    spans = []
    for match in re.finditer(r'\bSELECT\b', masked, re.IGNORECASE):
        list_start = match.end()
        list_end = find_clause_end(
            masked, list_start,
            ('FROM', 'WHERE', 'GROUP', 'ORDER', 'LIMIT', 'HAVING', 'UNION', 'INTERSECT', 'EXCEPT'),
        )
        spans.append((list_start, list_end))
    return spans


def _enclosing_function(masked: str, pos: int) -> Optional[str]:
    """Name of the function whose unclosed '(' encloses pos, if any."""
    depth = 0
    for i in range(pos - 1, -1, -1):
        char = masked[i]
        if char == ')':
            depth += 1
        elif char == '(':
            if depth == 0:
                before = re.search(r'([A-Za-z_]\w*)\s*$', masked[:i])
                return before.group(1).lower() if before else None
            depth -= 1
    return None


def find_table_references(sql: str) -> List[TableReference]:
    """
    Extract FROM/JOIN table sources.

    Handles: quoted names, schema.table, aliases (with or without AS),
    comma-separated FROM lists. Skips: FROM (subquery), table functions
    like FROM generate_series(...), FROM inside EXTRACT/SUBSTRING/TRIM,
    and IS DISTINCT FROM.
    """
    masked = mask_string_literals(sql)
    references: List[TableReference] = []

    for match in _TABLE_SOURCE_PATTERN.finditer(masked):
        keyword = match.group('keyword').upper()
        if keyword == 'FROM':
            if re.search(r'\bDISTINCT\s+$', masked[:match.start()], re.IGNORECASE):
                continue
            if _enclosing_function(masked, match.start()) in _FROM_ARGUMENT_FUNCTIONS:
                continue

        ref, pos = _build_reference(masked, match, keyword)
        if ref is None:
            continue
        references.append(ref)

        # Comma-separated FROM list: FROM a, b x, c
        while keyword == 'FROM':
            nxt = _NEXT_TABLE_PATTERN.match(masked, pos)
            if not nxt:
                break
            ref, pos = _build_reference(masked, nxt, keyword)
            if ref is None:
                break
            references.append(ref)

    return references


def _build_reference(masked: str, match: re.Match, keyword: str):
    raw_table = match.group('table')
    end = match.end('table')

    # Table functions and anything followed by '(' are not table sources
    if re.match(r'\s*\(', masked[end:]):
        return None, end

    name, quoted = unquote(raw_table)
    if not quoted and name.lower() in SQL_KEYWORDS:
        return None, end

    schema = match.group('schema')
    if schema:
        schema = unquote(schema)[0]

    alias = None
    pos = end
    alias_match = _ALIAS_PATTERN.match(masked, end)
    if alias_match:
        alias_name, alias_quoted = unquote(alias_match.group(1))
        if alias_quoted or alias_name.lower() not in SQL_KEYWORDS:
            alias = alias_name
            pos = alias_match.end()

    return TableReference(
        name=name,
        schema=schema,
        alias=alias,
        quoted=quoted,
        start=match.start('table'),
        end=end,
        keyword=keyword,
    ), pos


# =============================================================================
# IDENTIFIER TOKENS
# =============================================================================

QUALIFIED_REFERENCE_PATTERN = re.compile(
    r'(?<![\w."$])("[^"]+"|[A-Za-z_][\w$]*)\s*\.\s*("[^"]+"|[A-Za-z_][\w$]*)'
)

_BARE_TOKEN_PATTERN = re.compile(r'(?<![\w.$"\x00])([A-Za-z_][\w$]*)(?![\w$"])')

_TRAILING_ALIAS_PATTERN = re.compile(
    r'^(?P<expr>.*?[\w")\]])\s+(?:AS\s+)?(?P<alias>"[^"]+"|[A-Za-z_][\w$]*)$',
    re.IGNORECASE | re.DOTALL
)

_DANGLING_OPERATOR_PATTERN = re.compile(
    r'(?:[+\-*/%|=<>]|::|\b(?:AND|OR|NOT|CASE|WHEN|THEN|ELSE|DISTINCT|IS|IN|LIKE))\s*$',
    re.IGNORECASE
)


def select_item_expression_end(masked: str, start: int, end: int) -> int:
    """
    End offset of a SELECT item's expression, excluding a trailing alias.

    "price * qty AS total" -> end of "price * qty"
    "COUNT(*) cnt"         -> end of "COUNT(*)"
    """
    item = masked[start:end]
    body = re.sub(r'^\s*(?:DISTINCT|ALL)\s+', '', item, flags=re.IGNORECASE)
    offset = len(item) - len(body)

    match = _TRAILING_ALIAS_PATTERN.match(body)
    if not match:
        return end
    alias = match.group('alias')
    if not alias.startswith('"') and alias.lower() in RESERVED_WORDS:
        return end
    if _DANGLING_OPERATOR_PATTERN.search(match.group('expr')):
        return end
    return start + offset + match.end('expr')


def select_item_alias(masked: str, start: int, end: int) -> Optional[str]:
    """Alias declared by a SELECT item, if any (unquoted)."""
    expr_end = select_item_expression_end(masked, start, end)
    if expr_end == end:
        return None
    alias = re.sub(r'^\s+(?:AS\s+)?', '', masked[expr_end:end], flags=re.IGNORECASE)
    return unquote(alias.strip())[0] or None


def iter_bare_tokens(masked: str, start: int, end: int):
    """
    Yield (start, end, token) for unquoted identifiers in masked[start:end]
    that are not qualified, not function names, not after AS and not type
    names after '::'. Quoted identifiers must already be masked.
    """
    for match in _BARE_TOKEN_PATTERN.finditer(masked, start, end):
        token_start, token_end = match.start(1), match.end(1)
        if re.match(r'\s*[.(]', masked[token_end:end]):
            continue
        if re.search(r'(?:\bAS|::)\s*$', masked[start:token_start], re.IGNORECASE):
            continue
        yield token_start, token_end, match.group(1)


def apply_replacements(sql: str, replacements: List[Tuple[int, int, str]]) -> str:
    """Apply non-overlapping (start, end, text) edits right-to-left."""
    for start, end, text in sorted(replacements, key=lambda r: r[0], reverse=True):
        sql = sql[:start] + text + sql[end:]
    return sql
