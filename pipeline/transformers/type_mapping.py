"""
Static type matrices: canonical (ClickHouse-flavoured) source type tags to
each destination dialect's type names, plus the destination DDL renderer.

The matrices are built once at import and exposed read-only; every job
shares them.
"""

import logging
import re
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple

from models.base import WarehouseKind

logger = logging.getLogger(__name__)

# Wrappers whose meaning is carried by their single inner type
TRANSPARENT_WRAPPERS = ("Nullable", "LowCardinality")

INTEGER_TYPES = frozenset({
    "Int8", "Int16", "Int32", "Int64", "Int128", "Int256",
    "UInt8", "UInt16", "UInt32", "UInt64", "UInt128", "UInt256",
})
FLOAT_TYPES = frozenset({"Float32", "Float64", "BFloat16"})
DECIMAL_TYPES = frozenset({"Decimal", "Decimal32", "Decimal64", "Decimal128", "Decimal256"})
BOOLEAN_TYPES = frozenset({"Bool", "Boolean"})
DATE_TYPES = frozenset({"Date", "Date32"})
DATETIME_TYPES = frozenset({"DateTime", "DateTime64"})
STRING_TYPES = frozenset({"String", "FixedString", "UUID", "IPv4", "IPv6"})
ENUM_TYPES = frozenset({"Enum", "Enum8", "Enum16"})
ARRAY_TYPES = frozenset({"Array"})
STRUCTURED_TYPES = frozenset({"Map", "Tuple", "Nested", "JSON", "Object", "Variant", "Dynamic"})
GEO_TYPES = frozenset({"Point", "Ring", "LineString", "MultiLineString", "Polygon", "MultiPolygon", "Geo"})

FALLBACK_TYPES = MappingProxyType({
    WarehouseKind.SNOWFLAKE: "VARCHAR",
    WarehouseKind.BIGQUERY: "STRING",
    WarehouseKind.REDSHIFT: "VARCHAR(65535)",
    WarehouseKind.POSTGRES: "TEXT",
    WarehouseKind.CLICKHOUSE: "String",
})

_SNOWFLAKE = {
    "Int8": "NUMBER(5,0)", "Int16": "NUMBER(5,0)", "UInt8": "NUMBER(5,0)", "UInt16": "NUMBER(5,0)",
    "Int32": "NUMBER(10,0)", "UInt32": "NUMBER(10,0)",
    "Int64": "NUMBER(20,0)", "UInt64": "NUMBER(20,0)",
    "Int128": "NUMBER(38,0)", "UInt128": "NUMBER(38,0)", "Int256": "NUMBER(38,0)", "UInt256": "NUMBER(38,0)",
    "Float32": "FLOAT", "Float64": "DOUBLE", "BFloat16": "FLOAT",
    "Decimal": "NUMBER(38,6)",
    "Bool": "BOOLEAN",
    "Date": "DATE", "Date32": "DATE",
    "DateTime": "TIMESTAMP", "DateTime64": "TIMESTAMP",
    "String": "VARCHAR", "FixedString": "VARCHAR", "UUID": "VARCHAR",
    "IPv4": "VARCHAR(15)", "IPv6": "VARCHAR(45)",
    "Enum": "VARCHAR",
    "Array": "ARRAY",
    "Map": "OBJECT", "Tuple": "VARIANT", "Nested": "VARIANT", "Variant": "VARIANT",
    "Dynamic": "VARIANT", "JSON": "VARIANT", "Object": "OBJECT",
    "Geo": "GEOGRAPHY",
}

_BIGQUERY = {
    "Int8": "INT64", "Int16": "INT64", "Int32": "INT64", "Int64": "INT64",
    "UInt8": "INT64", "UInt16": "INT64", "UInt32": "INT64", "UInt64": "NUMERIC",
    "Int128": "BIGNUMERIC", "UInt128": "BIGNUMERIC", "Int256": "BIGNUMERIC", "UInt256": "BIGNUMERIC",
    "Float32": "FLOAT64", "Float64": "FLOAT64", "BFloat16": "FLOAT64",
    "Decimal": "NUMERIC",
    "Bool": "BOOL",
    "Date": "DATE", "Date32": "DATE",
    "DateTime": "TIMESTAMP", "DateTime64": "TIMESTAMP",
    "String": "STRING", "FixedString": "STRING", "UUID": "STRING", "IPv4": "STRING", "IPv6": "STRING",
    "Enum": "STRING",
    "Array": "ARRAY",
    "Map": "JSON", "Tuple": "JSON", "Nested": "JSON", "Variant": "JSON",
    "Dynamic": "JSON", "JSON": "JSON", "Object": "JSON",
    "Geo": "GEOGRAPHY",
}

_REDSHIFT = {
    "Int8": "SMALLINT", "Int16": "SMALLINT", "UInt8": "SMALLINT",
    "UInt16": "INTEGER", "Int32": "INTEGER",
    "UInt32": "BIGINT", "Int64": "BIGINT",
    "UInt64": "DECIMAL(20,0)", "Int128": "DECIMAL(38,0)", "UInt128": "DECIMAL(38,0)",
    "Int256": "DECIMAL(38,0)", "UInt256": "DECIMAL(38,0)",
    "Float32": "FLOAT4", "Float64": "DOUBLE PRECISION", "BFloat16": "FLOAT4",
    "Decimal": "DECIMAL(38,6)",
    "Bool": "BOOLEAN",
    "Date": "DATE", "Date32": "DATE",
    "DateTime": "TIMESTAMP", "DateTime64": "TIMESTAMP",
    "String": "VARCHAR(65535)", "FixedString": "VARCHAR(65535)", "UUID": "VARCHAR(36)",
    "IPv4": "VARCHAR(15)", "IPv6": "VARCHAR(45)",
    "Enum": "VARCHAR(256)",
    "Array": "SUPER",
    "Map": "SUPER", "Tuple": "SUPER", "Nested": "SUPER", "Variant": "SUPER",
    "Dynamic": "SUPER", "JSON": "SUPER", "Object": "SUPER",
    "Geo": "GEOMETRY",
}

_POSTGRES = {
    "Int8": "SMALLINT", "Int16": "SMALLINT", "UInt8": "SMALLINT",
    "UInt16": "INTEGER", "Int32": "INTEGER",
    "UInt32": "BIGINT", "Int64": "BIGINT",
    "UInt64": "NUMERIC(20,0)", "Int128": "NUMERIC(39,0)", "UInt128": "NUMERIC(39,0)",
    "Int256": "NUMERIC(77,0)", "UInt256": "NUMERIC(78,0)",
    "Float32": "REAL", "Float64": "DOUBLE PRECISION", "BFloat16": "REAL",
    "Decimal": "NUMERIC(38,6)",
    "Bool": "BOOLEAN",
    "Date": "DATE", "Date32": "DATE",
    "DateTime": "TIMESTAMP", "DateTime64": "TIMESTAMP",
    "String": "TEXT", "FixedString": "TEXT", "UUID": "UUID", "IPv4": "INET", "IPv6": "INET",
    "Enum": "TEXT",
    "Array": "JSONB",
    "Map": "JSONB", "Tuple": "JSONB", "Nested": "JSONB", "Variant": "JSONB",
    "Dynamic": "JSONB", "JSON": "JSONB", "Object": "JSONB",
    "Geo": "JSONB",
}

TYPE_MATRIX: Mapping[WarehouseKind, Mapping[str, str]] = MappingProxyType({
    WarehouseKind.SNOWFLAKE: MappingProxyType(_SNOWFLAKE),
    WarehouseKind.BIGQUERY: MappingProxyType(_BIGQUERY),
    WarehouseKind.REDSHIFT: MappingProxyType(_REDSHIFT),
    WarehouseKind.POSTGRES: MappingProxyType(_POSTGRES),
})

# Decimal(P, S) keeps its precision where the dialect allows it
_DECIMAL_TEMPLATES = {
    WarehouseKind.SNOWFLAKE: "NUMBER({p},{s})",
    WarehouseKind.BIGQUERY: "NUMERIC({p},{s})",
    WarehouseKind.REDSHIFT: "DECIMAL({p},{s})",
    WarehouseKind.POSTGRES: "NUMERIC({p},{s})",
}
_DECIMAL_MAX_PRECISION = {
    WarehouseKind.SNOWFLAKE: 38,
    WarehouseKind.BIGQUERY: 29,
    WarehouseKind.REDSHIFT: 38,
    WarehouseKind.POSTGRES: 1000,
}
_DECIMAL_WIDTHS = {"Decimal32": 9, "Decimal64": 18, "Decimal128": 38, "Decimal256": 76}


def split_type(type_tag: str) -> Tuple[str, str]:
    """Split `Name(args)` into ("Name", "args"); unparametrised tags give ("Name", "")."""
    tag = type_tag.strip()
    paren = tag.find("(")
    if paren == -1 or not tag.endswith(")"):
        return tag, ""
    return tag[:paren].strip(), tag[paren + 1:-1].strip()


def split_arguments(arguments: str) -> List[str]:
    """Split a type argument list on top-level commas."""
    parts, depth, current, quote = [], 0, [], None
    for ch in arguments:
        if quote:
            current.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"', "`"):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if current:
        parts.append("".join(current).strip())
    return [p for p in parts if p]


def unwrap(type_tag: str) -> str:
    """Strip Nullable/LowCardinality/SimpleAggregateFunction wrappers, recursively."""
    name, args = split_type(type_tag)
    if name in TRANSPARENT_WRAPPERS and args:
        return unwrap(args)
    if name == "SimpleAggregateFunction" and args:
        inner = split_arguments(args)
        if len(inner) == 2:
            return unwrap(inner[1])
    return type_tag.strip()


def type_family(type_tag: str) -> Optional[str]:
    """
    Canonical family of a (possibly wrapped) type tag.

    Returns one of: integer, float, decimal, boolean, date, datetime,
    string, enum, array, structured, geo; or None for unknown tags.
    """
    name, _ = split_type(unwrap(type_tag))
    if name in INTEGER_TYPES:
        return "integer"
    if name in FLOAT_TYPES:
        return "float"
    if name in DECIMAL_TYPES:
        return "decimal"
    if name in BOOLEAN_TYPES:
        return "boolean"
    if name in DATE_TYPES:
        return "date"
    if name in DATETIME_TYPES:
        return "datetime"
    if name in STRING_TYPES:
        return "string"
    if name in ENUM_TYPES:
        return "enum"
    if name in ARRAY_TYPES:
        return "array"
    if name in STRUCTURED_TYPES:
        return "structured"
    if name in GEO_TYPES:
        return "geo"
    return None


def _decimal_type(destination: WarehouseKind, name: str, args: str) -> str:
    parts = split_arguments(args)
    try:
        if name == "Decimal" and len(parts) == 2:
            precision, scale = int(parts[0]), int(parts[1])
        elif name in _DECIMAL_WIDTHS and len(parts) == 1:
            precision, scale = _DECIMAL_WIDTHS[name], int(parts[0])
        else:
            return TYPE_MATRIX[destination]["Decimal"]
    except ValueError:
        return TYPE_MATRIX[destination]["Decimal"]

    precision = min(precision, _DECIMAL_MAX_PRECISION[destination])
    scale = min(scale, precision)
    return _DECIMAL_TEMPLATES[destination].format(p=precision, s=scale)


# Canonical tags produced by non-ClickHouse catalogs that are not ClickHouse types
_CLICKHOUSE_CANONICAL = {"Geo": "String", "Decimal": "Decimal(38, 6)"}
# ClickHouse refuses Nullable(...) around these
_NON_NULLABLE = ARRAY_TYPES | STRUCTURED_TYPES | GEO_TYPES | frozenset({"Nullable", "LowCardinality"})


def _clickhouse_type(source_type: str) -> str:
    """
    ClickHouse type for a tag: ClickHouse tags pass through, canonical-only
    tags are replaced and Nullable(...) is dropped where the inner type
    cannot hold it.
    """
    tag = (source_type or "").strip()
    if not tag:
        return FALLBACK_TYPES[WarehouseKind.CLICKHOUSE]

    name, args = split_type(tag)
    if name == "Nullable" and args:
        inner = _clickhouse_type(args)
        if split_type(inner)[0] in _NON_NULLABLE:
            return inner
        return f"Nullable({inner})"
    if not args and name in _CLICKHOUSE_CANONICAL:
        return _CLICKHOUSE_CANONICAL[name]
    return tag


def map_type(destination: WarehouseKind, source_type: str) -> str:
    """
    Destination type name for a canonical source type tag.

    Unknown tags fall back to the destination's generic string type.
    """
    destination = WarehouseKind(destination)
    if destination == WarehouseKind.CLICKHOUSE:
        return _clickhouse_type(source_type)

    if not source_type or not source_type.strip():
        logger.warning(f"Empty source type, defaulting to {FALLBACK_TYPES[destination]}")
        return FALLBACK_TYPES[destination]

    matrix = TYPE_MATRIX[destination]
    name, args = split_type(unwrap(source_type))
    family = type_family(name)

    if family == "decimal":
        return _decimal_type(destination, name, args)
    if family == "enum":
        return matrix["Enum"]
    if family == "geo":
        return matrix["Geo"]
    if family == "array" and destination == WarehouseKind.BIGQUERY:
        element = map_type(destination, args) if args else "STRING"
        # BigQuery has no nested arrays or JSON elements inside ARRAY<>
        if element.startswith("ARRAY") or element == "JSON":
            return "JSON"
        return f"ARRAY<{element}>"
    if name in matrix:
        return matrix[name]

    logger.warning(f"Unsupported source type: {source_type}, defaulting to {FALLBACK_TYPES[destination]}")
    return FALLBACK_TYPES[destination]


# ============================================================================
# DDL
# ============================================================================

def quote_identifier(destination: WarehouseKind, identifier: str) -> str:
    """Quote a (possibly dotted) identifier for the destination dialect."""
    destination = WarehouseKind(destination)
    parts = identifier.split(".")
    if destination == WarehouseKind.BIGQUERY:
        return "`" + ".".join(parts) + "`"
    if destination == WarehouseKind.CLICKHOUSE:
        return ".".join(f"`{p}`" for p in parts)
    return ".".join(f'"{p}"' for p in parts)


def create_table_sql(destination: WarehouseKind, table: str, columns: Iterable) -> str:
    """
    `CREATE TABLE IF NOT EXISTS <table> (<col> <mapped type>, ...)` for a destination.

    Columns are ColumnDescriptor-like objects (name, source_type, is_primary_key).
    """
    destination = WarehouseKind(destination)
    columns = list(columns)
    definitions = [
        f"{quote_identifier(destination, c.name)} {map_type(destination, c.source_type)}"
        for c in columns
    ]
    primary_keys = [quote_identifier(destination, c.name) for c in columns if c.is_primary_key]

    if primary_keys and destination in (WarehouseKind.SNOWFLAKE, WarehouseKind.REDSHIFT, WarehouseKind.POSTGRES):
        definitions.append(f"PRIMARY KEY ({', '.join(primary_keys)})")

    ddl = f"CREATE TABLE IF NOT EXISTS {quote_identifier(destination, table)} ({', '.join(definitions)})"

    if destination == WarehouseKind.CLICKHOUSE:
        order_by = f"({', '.join(primary_keys)})" if primary_keys else "tuple()"
        ddl += f" ENGINE = ReplacingMergeTree ORDER BY {order_by}"

    return ddl
