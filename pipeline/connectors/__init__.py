"""
Warehouse connectors: one implementation per backend behind one contract.

Modules:
    base: WarehouseConnector ABC, RowStream, batch helpers
    registry: ConnectorRegistry and default_registry()
    clickhouse: ClickHouseConnector (clickhouse-connect)
    snowflake: SnowflakeConnector (snowflake-connector-python)
    bigquery: BigQueryConnector (google-cloud-bigquery)
    postgres: PostgresConnector, RedshiftConnector (psycopg2)

Vendor SDKs are imported only by their own module, so importing the
base contract or the registry does not load every SDK.
"""

__all__ = [
    "WarehouseConnector",
    "RowStream",
    "ConnectorRegistry",
    "default_registry",
]
