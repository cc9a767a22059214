"""
SQLGuard - Schema Providers
===========================

The engine never owns schema state. A SchemaProvider hands it an immutable
snapshot (tables -> columns -> generic type) on every validation request.

Two providers ship with the engine:
- StaticSchemaProvider: in-process registry for tables created from uploaded
  CSV/Excel files (the ingestion layer registers, the engine only reads)
- DatabaseSchemaProvider: re-reads catalog metadata through SQLAlchemy
  inspection on every call

Driver- and catalog-specific type names are folded into GenericType so that
downstream consumers (charts, tables, the numeric-sort safety net) only see
six portable types.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class GenericType(str, Enum):
    """Portable column type every driver-specific type is coerced into."""
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATE = "date"
    TIMESTAMP = "timestamp"
    TEXT = "text"

    @property
    def is_numeric(self) -> bool:
        return self in (GenericType.INTEGER, GenericType.DECIMAL)


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    type: GenericType = GenericType.TEXT
    nullable: bool = True


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    columns: Tuple[ColumnDescriptor, ...] = ()

    @property
    def column_names(self) -> List[str]:
        return [col.name for col in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDescriptor]:
        """Case-insensitive column lookup."""
        name_lower = name.lower()
        for col in self.columns:
            if col.name.lower() == name_lower:
                return col
        return None


# =============================================================================
# TYPE MAPPING
# =============================================================================

# PostgreSQL type OIDs (pg_type.oid) reported in cursor descriptions
PG_TYPE_OIDS: Dict[int, GenericType] = {
    16: GenericType.BOOLEAN,      # bool
    20: GenericType.INTEGER,      # int8
    21: GenericType.INTEGER,      # int2
    23: GenericType.INTEGER,      # int4
    26: GenericType.INTEGER,      # oid
    700: GenericType.DECIMAL,     # float4
    701: GenericType.DECIMAL,     # float8
    790: GenericType.DECIMAL,     # money
    1700: GenericType.DECIMAL,    # numeric
    1082: GenericType.DATE,       # date
    1114: GenericType.TIMESTAMP,  # timestamp
    1184: GenericType.TIMESTAMP,  # timestamptz
    25: GenericType.TEXT,         # text
    1042: GenericType.TEXT,       # bpchar
    1043: GenericType.TEXT,       # varchar
}

# Ordered: first pattern that matches the lowercased declared type wins
_DECLARED_TYPE_PATTERNS: List[Tuple[re.Pattern, GenericType]] = [
    (re.compile(r'\bbool(ean)?\b'), GenericType.BOOLEAN),
    (re.compile(r'timestamp|datetime'), GenericType.TIMESTAMP),
    (re.compile(r'^date\b|\bdate$'), GenericType.DATE),
    (re.compile(r'\b(big|small|tiny|medium)?int(eger)?\d*\b|\bserial\b|\bbigserial\b'), GenericType.INTEGER),
    (re.compile(r'numeric|decimal|real|double|float|money|number'), GenericType.DECIMAL),
]


def generic_type_from_declared(type_name: Any) -> GenericType:
    """
    Map a declared column type to GenericType.

    Accepts catalog strings ("character varying", "bigint", "NUMERIC(10, 2)",
    "timestamp without time zone") and SQLAlchemy type objects (via str()).
    Unknown types map to TEXT.
    """
    if type_name is None:
        return GenericType.TEXT
    if isinstance(type_name, GenericType):
        return type_name

    declared = str(type_name).strip().lower()
    if not declared:
        return GenericType.TEXT

    for value in GenericType:
        if declared == value.value:
            return value

    for pattern, generic in _DECLARED_TYPE_PATTERNS:
        if pattern.search(declared):
            return generic
    return GenericType.TEXT


def generic_type_from_pg_oid(type_code: Any) -> Optional[GenericType]:
    """Map a PostgreSQL type OID to GenericType; None when not an OID."""
    if isinstance(type_code, bool) or not isinstance(type_code, int):
        return None
    return PG_TYPE_OIDS.get(type_code, GenericType.TEXT)


# =============================================================================
# PROVIDERS
# =============================================================================

class SchemaProvider:
    """
    Read-only schema snapshot source.

    Implementations must return a fresh list on each call; the engine treats
    staleness as the provider's responsibility.
    """

    def tables(self) -> List[TableDescriptor]:
        raise NotImplementedError


class StaticSchemaProvider(SchemaProvider):
    """
    In-process table registry (uploaded-file tables).

    The ingestion layer registers and removes tables; the engine only reads
    snapshots via tables().
    """

    def __init__(self, tables: Optional[Iterable[TableDescriptor]] = None):
        self._tables: Dict[str, TableDescriptor] = {}
        for table in tables or []:
            self._tables[table.name.lower()] = table

    @classmethod
    def from_dict(cls, schema: Dict[str, Any]) -> "StaticSchemaProvider":
        """
        Build from a plain mapping.

        Accepts either {"table": ["col", ...]} or the backend's schema dict
        shape {"tables": {"table": {"columns": [{"name", "type", "nullable"}]}}}.
        """
        raw_tables = schema.get("tables", schema) if isinstance(schema, dict) else {}
        tables = []
        for table_name, info in raw_tables.items():
            raw_columns = info.get("columns", []) if isinstance(info, dict) else info
            columns = []
            for col in raw_columns:
                if isinstance(col, ColumnDescriptor):
                    columns.append(col)
                elif isinstance(col, dict):
                    columns.append(ColumnDescriptor(
                        name=col["name"],
                        type=generic_type_from_declared(col.get("type")),
                        nullable=bool(col.get("nullable", True)),
                    ))
                else:
                    columns.append(ColumnDescriptor(name=str(col)))
            tables.append(TableDescriptor(name=table_name, columns=tuple(columns)))
        return cls(tables)

    def register_table(self, name: str, columns: Iterable[ColumnDescriptor]) -> TableDescriptor:
        table = TableDescriptor(name=name, columns=tuple(columns))
        self._tables[name.lower()] = table
        logger.info(f"[SCHEMA] Registered table '{name}' ({len(table.columns)} columns)")
        return table

    def unregister_table(self, name: str) -> bool:
        removed = self._tables.pop(name.lower(), None)
        return removed is not None

    def tables(self) -> List[TableDescriptor]:
        return list(self._tables.values())


class DatabaseSchemaProvider(SchemaProvider):
    """
    Live catalog provider.

    Re-inspects the database on every tables() call. System and ORM
    bookkeeping tables (pg_*, _prisma*) are never exposed.
    """

    SYSTEM_SCHEMAS = {
        'information_schema', 'pg_catalog', 'pg_toast', 'mysql', 'sys',
        'performance_schema',
    }
    HIDDEN_TABLE_PREFIXES = ('pg_', '_prisma')

    def __init__(self, engine: Engine, schema: Optional[str] = "public"):
        if schema and schema.lower() in self.SYSTEM_SCHEMAS:
            raise ValueError(f"Refusing to expose system schema '{schema}'")
        self.engine = engine
        self.schema = schema

    def tables(self) -> List[TableDescriptor]:
        try:
            inspector = inspect(self.engine)
            schema = self.schema if self._uses_schemas() else None
            table_names = inspector.get_table_names(schema=schema)

            result = []
            for table_name in table_names:
                if table_name.lower().startswith(self.HIDDEN_TABLE_PREFIXES):
                    continue
                columns = inspector.get_columns(table_name, schema=schema)
                result.append(TableDescriptor(
                    name=table_name,
                    columns=tuple(
                        ColumnDescriptor(
                            name=col["name"],
                            type=generic_type_from_declared(col["type"]),
                            nullable=bool(col.get("nullable", True)),
                        )
                        for col in columns
                    ),
                ))

            logger.debug(f"[SCHEMA] Loaded {len(result)} tables from '{schema or 'default'}'")
            return result

        except SQLAlchemyError as e:
            logger.error(f"[SCHEMA] Failed to load schema: {str(e)}")
            return []

    def _uses_schemas(self) -> bool:
        # SQLite has no named schemas besides "main"
        return bool(self.schema) and self.engine.dialect.name != "sqlite"


# =============================================================================
# PROMPT FORMATTING
# =============================================================================

def _display_name(name: str) -> str:
    if re.search(r'[A-Z]', name) or re.search(r'[^a-z0-9_]', name):
        return f'"{name}"'
    return name


def format_schema_for_prompt(tables: List[TableDescriptor], max_tables: int = 20) -> str:
    """
    Render a compact schema description for the NL-SQL collaborator.

    Mixed-case and special-character names are shown quoted because
    PostgreSQL is case-sensitive for quoted identifiers.
    """
    shown = tables[:max_tables]
    lines = ["SCHEMA (use EXACT column names as shown):"]

    for table in shown:
        columns = ", ".join(
            f"{_display_name(col.name)}:{col.type.value}" for col in table.columns
        )
        lines.append(f"{table.name}({columns})")

    remaining = len(tables) - len(shown)
    if remaining > 0:
        lines.append(f"... and {remaining} more tables")

    lines.append("")
    lines.append(
        "CRITICAL: Use EXACT column names from above. "
        "PostgreSQL is case-sensitive for quoted identifiers."
    )
    return "\n".join(lines)


def columns_by_table(tables: List[TableDescriptor]) -> Dict[str, List[str]]:
    """Table name -> column names, preserving schema order."""
    return {table.name: table.column_names for table in tables}
