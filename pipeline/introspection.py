"""
Schema introspection: ordered column descriptors for one source table
"""

import logging
from typing import List

from core.exceptions import SchemaIntrospectionError
from models.base import WarehouseKind
from pipeline.connectors.base import WarehouseConnector
from pipeline.transformers.type_mapping import split_type
from schemas.sync import ColumnDescriptor

logger = logging.getLogger(__name__)


async def introspect(connector: WarehouseConnector, table_name: str) -> List[ColumnDescriptor]:
    """
    Describe `table_name` on an open connector.

    Column order is the catalog order and defines the positional mapping
    of streamed rows for the rest of the job. Primary-key flags come from
    a separate catalog query and are only used for merge keying. Non-key
    columns from other warehouses are tagged Nullable(...).

    Raises:
        SchemaIntrospectionError: If the table has no columns (or does not exist)
        QueryError: If a catalog query fails (retryable)
    """
    columns = await connector.describe_columns(table_name)
    if not columns:
        raise SchemaIntrospectionError(
            f"Table '{table_name}' has no columns or does not exist",
            context={"table": table_name, "warehouse": connector.kind.value}
        )

    names = [name for name, _ in columns]
    if len(set(names)) != len(names):
        raise SchemaIntrospectionError(
            f"Table '{table_name}' reports duplicate column names",
            context={"table": table_name, "warehouse": connector.kind.value}
        )

    primary_keys = set(await connector.primary_key_columns(table_name))
    unknown_keys = primary_keys - {name for name, _ in columns}
    if unknown_keys:
        logger.warning(f"Ignoring primary key columns not in catalog: {sorted(unknown_keys)}")

    # Only ClickHouse catalogs spell nullability into the type tag
    mark_nullable = connector.kind != WarehouseKind.CLICKHOUSE

    descriptors = []
    for name, source_type in columns:
        is_key = name in primary_keys
        if mark_nullable and not is_key and split_type(source_type)[0] != "Nullable":
            source_type = f"Nullable({source_type})"
        descriptors.append(ColumnDescriptor(name=name, source_type=source_type, is_primary_key=is_key))

    logger.info(
        f"Introspected {table_name}: {len(descriptors)} columns, "
        f"primary key {[d.name for d in descriptors if d.is_primary_key] or 'none'}"
    )
    return descriptors
