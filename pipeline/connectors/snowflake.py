"""
Snowflake connector (snowflake-connector-python)
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import snowflake.connector
from snowflake.connector import DictCursor

from models.base import WarehouseKind
from pipeline.connectors.base import WarehouseConnector, dedupe_by_key, dumps, is_json_column

logger = logging.getLogger(__name__)


class SnowflakeConnector(WarehouseConnector):
    """
    Snowflake source and destination.

    Credentials:
        account, username (or user), password, database, schema,
        warehouse and role (optional)

    Keyed batches are upserted with one MERGE over a bound VALUES list;
    VARIANT/ARRAY/OBJECT columns are bound as JSON text and parsed
    server-side with PARSE_JSON.
    """

    kind = WarehouseKind.SNOWFLAKE

    NATIVE_TO_CANONICAL = {
        "number": "Decimal",
        "decimal": "Decimal",
        "numeric": "Decimal",
        "int": "Int64",
        "integer": "Int64",
        "bigint": "Int64",
        "smallint": "Int16",
        "tinyint": "Int8",
        "byteint": "Int8",
        "float": "Float64",
        "float4": "Float32",
        "float8": "Float64",
        "double": "Float64",
        "double precision": "Float64",
        "real": "Float64",
        "varchar": "String",
        "char": "String",
        "character": "String",
        "string": "String",
        "text": "String",
        "binary": "String",
        "varbinary": "String",
        "boolean": "Bool",
        "date": "Date",
        "datetime": "DateTime",
        "timestamp": "DateTime",
        "timestamp_ntz": "DateTime",
        "timestamp_ltz": "DateTime",
        "timestamp_tz": "DateTime",
        "time": "String",
        "variant": "JSON",
        "object": "JSON",
        "array": "JSON",
        "geography": "Geo",
        "geometry": "Geo",
    }

    @property
    def schema(self) -> str:
        return self._credentials.get("schema") or "PUBLIC"

    def canonical_type(self, native_type: str) -> str:
        canonical = super().canonical_type(native_type)
        # NUMBER(p,0) is how Snowflake stores every integer type
        if canonical.startswith("Decimal(") and canonical.endswith(",0)"):
            precision = int(canonical[len("Decimal("):-len(",0)")])
            return "Int64" if precision <= 18 else "Int128"
        return canonical

    def qualify_table(self, table: str) -> str:
        if "." in table:
            return table
        return f"{self.schema}.{table}"

    def _connect(self):
        creds = self._credentials
        params = {
            "account": creds["account"],
            "user": creds.get("username") or creds.get("user"),
            "password": creds.get("password"),
            "database": creds.get("database"),
            "schema": self.schema,
            "login_timeout": creds.get("login_timeout", 30),
            "network_timeout": creds.get("network_timeout", 300),
        }
        for optional in ("warehouse", "role"):
            if creds.get(optional):
                params[optional] = creds[optional]
        return snowflake.connector.connect(**params)

    def _disconnect(self, client) -> None:
        client.close()

    def _describe_columns(self, table: str) -> List[Tuple[str, str]]:
        schema, name = self._split_table(table, self.schema)
        cursor = self._client.cursor()
        try:
            cursor.execute(
                "SELECT column_name, data_type, numeric_precision, numeric_scale "
                "FROM information_schema.columns "
                "WHERE UPPER(table_schema) = UPPER(%s) AND UPPER(table_name) = UPPER(%s) "
                "ORDER BY ordinal_position",
                (schema, name),
            )
            columns = []
            for column_name, data_type, precision, scale in cursor.fetchall():
                if data_type.upper() == "NUMBER" and precision is not None:
                    data_type = f"NUMBER({precision},{scale or 0})"
                columns.append((column_name, data_type))
            return columns
        finally:
            cursor.close()

    def _primary_key_columns(self, table: str) -> List[str]:
        cursor = self._client.cursor(DictCursor)
        try:
            cursor.execute(f"SHOW PRIMARY KEYS IN TABLE {self.quote(self.qualify_table(table))}")
            rows = sorted(cursor.fetchall(), key=lambda r: r.get("key_sequence", 0))
            return [row["column_name"] for row in rows]
        finally:
            cursor.close()

    def _list_tables(self) -> List[str]:
        cursor = self._client.cursor()
        try:
            cursor.execute(
                "SELECT table_name FROM information_schema.tables "
                "WHERE UPPER(table_schema) = UPPER(%s) AND table_type = 'BASE TABLE' "
                "ORDER BY table_name",
                (self.schema,),
            )
            return [row[0] for row in cursor.fetchall()]
        finally:
            cursor.close()

    def build_select(
        self, table: str, columns: Sequence[str], filters: Optional[Mapping[str, Any]] = None
    ) -> Tuple[str, Dict[str, Any]]:
        query = (
            f"SELECT {', '.join(self.quote(c) for c in columns)} "
            f"FROM {self.quote(self.qualify_table(table))}"
        )
        params: Dict[str, Any] = {}
        conditions = []
        for i, (column, value) in enumerate((filters or {}).items()):
            conditions.append(f"{self.quote(column)} = %(p{i})s")
            params[f"p{i}"] = value
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        return query, params

    def _start_stream(self, query: str, params: Any, block_size: int):
        cursor = self._client.cursor()
        try:
            cursor.execute(query, params or None)
        except Exception:
            cursor.close()
            raise
        cursor.arraysize = block_size
        return iter(lambda: cursor.fetchmany(block_size), []), cursor.close

    def _execute_ddl(self, ddl: str) -> None:
        cursor = self._client.cursor()
        try:
            cursor.execute(ddl)
        finally:
            cursor.close()

    def merge_sql(self, table: str, columns: List, key_columns: List[str], row_count: int) -> str:
        """
        MERGE statement upserting `row_count` bound rows by `key_columns`.

        Without key columns this is an INSERT ... SELECT over the same
        bound VALUES list.
        """
        names = [c.name for c in columns]
        selected = ", ".join(
            f"PARSE_JSON(column{i}) AS {self.quote(c.name)}" if is_json_column(c)
            else f"column{i} AS {self.quote(c.name)}"
            for i, c in enumerate(columns, start=1)
        )
        row_placeholder = "(" + ", ".join(["%s"] * len(columns)) + ")"
        values = ", ".join([row_placeholder] * row_count)
        source = f"SELECT {selected} FROM VALUES {values}"
        target = self.quote(self.qualify_table(table))
        column_list = ", ".join(self.quote(n) for n in names)

        if not key_columns:
            return f"INSERT INTO {target} ({column_list}) {source}"

        on_clause = " AND ".join(f"t.{self.quote(k)} = s.{self.quote(k)}" for k in key_columns)
        updates = ", ".join(
            f"t.{self.quote(n)} = s.{self.quote(n)}" for n in names if n not in key_columns
        )
        insert_values = ", ".join(f"s.{self.quote(n)}" for n in names)

        sql = f"MERGE INTO {target} AS t USING ({source}) AS s ON {on_clause}"
        if updates:
            sql += f" WHEN MATCHED THEN UPDATE SET {updates}"
        sql += f" WHEN NOT MATCHED THEN INSERT ({column_list}) VALUES ({insert_values})"
        return sql

    def _write_batch(self, table: str, columns: List, records: List[Dict[str, Any]]) -> int:
        key_columns = [c.name for c in columns if c.is_primary_key]
        records = dedupe_by_key(records, key_columns)

        params: List[Any] = []
        for record in records:
            for column in columns:
                value = record.get(column.name)
                params.append(dumps(value) if is_json_column(column) else value)

        sql = self.merge_sql(table, columns, key_columns, len(records))
        cursor = self._client.cursor()
        try:
            cursor.execute(sql, params)
        finally:
            cursor.close()
        return len(records)
