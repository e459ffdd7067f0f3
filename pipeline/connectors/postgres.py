"""
PostgreSQL and Redshift connectors (psycopg2)
"""

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import psycopg2
from psycopg2.extras import execute_values

from models.base import WarehouseKind
from pipeline.connectors.base import WarehouseConnector, dedupe_by_key, dumps, is_json_column

logger = logging.getLogger(__name__)


class PostgresConnector(WarehouseConnector):
    """
    PostgreSQL source and destination.

    Credentials:
        host, port, database, username (or user), password,
        schema (optional, default public), sslmode (optional)

    Reads use a named (server-side) cursor; keyed writes are
    INSERT ... ON CONFLICT DO UPDATE, committed once per batch.
    """

    kind = WarehouseKind.POSTGRES
    default_port = 5432

    NATIVE_TO_CANONICAL = {
        "smallint": "Int16",
        "integer": "Int32",
        "int": "Int32",
        "int2": "Int16",
        "int4": "Int32",
        "int8": "Int64",
        "bigint": "Int64",
        "serial": "Int32",
        "bigserial": "Int64",
        "numeric": "Decimal",
        "decimal": "Decimal",
        "real": "Float32",
        "float4": "Float32",
        "double precision": "Float64",
        "float8": "Float64",
        "boolean": "Bool",
        "bool": "Bool",
        "character varying": "String",
        "varchar": "String",
        "character": "String",
        "char": "String",
        "bpchar": "String",
        "text": "String",
        "name": "String",
        "citext": "String",
        "uuid": "UUID",
        "inet": "String",
        "cidr": "String",
        "date": "Date",
        "timestamp without time zone": "DateTime",
        "timestamp with time zone": "DateTime",
        "timestamp": "DateTime",
        "timestamptz": "DateTime",
        "time without time zone": "String",
        "time with time zone": "String",
        "interval": "String",
        "json": "JSON",
        "jsonb": "JSON",
        "super": "JSON",
        "array": "JSON",
        "bytea": "String",
    }

    @property
    def schema(self) -> str:
        return self._credentials.get("schema") or "public"

    def qualify_table(self, table: str) -> str:
        if "." in table:
            return table
        return f"{self.schema}.{table}"

    def _connect(self):
        creds = self._credentials
        params = {
            "host": creds.get("host"),
            "port": int(creds.get("port") or self.default_port),
            "dbname": creds.get("database") or creds.get("dbname"),
            "user": creds.get("username") or creds.get("user"),
            "password": creds.get("password"),
            "connect_timeout": int(creds.get("connect_timeout", 30)),
        }
        if creds.get("sslmode"):
            params["sslmode"] = creds["sslmode"]
        return psycopg2.connect(**params)

    def _disconnect(self, client) -> None:
        client.close()

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple]:
        with self._client.cursor() as cursor:
            cursor.execute(sql, params)
            rows = cursor.fetchall()
        self._client.rollback()
        return rows

    def _describe_columns(self, table: str) -> List[Tuple[str, str]]:
        schema, name = self._split_table(table, self.schema)
        rows = self._fetch(
            "SELECT column_name, data_type, numeric_precision, numeric_scale "
            "FROM information_schema.columns "
            "WHERE table_schema = %s AND table_name = %s "
            "ORDER BY ordinal_position",
            (schema, name),
        )
        columns = []
        for column_name, data_type, precision, scale in rows:
            if data_type in ("numeric", "decimal") and precision is not None:
                data_type = f"{data_type}({precision},{scale or 0})"
            columns.append((column_name, data_type))
        return columns

    def _primary_key_columns(self, table: str) -> List[str]:
        schema, name = self._split_table(table, self.schema)
        rows = self._fetch(
            "SELECT kcu.column_name "
            "FROM information_schema.table_constraints tc "
            "JOIN information_schema.key_column_usage kcu "
            "  ON tc.constraint_name = kcu.constraint_name "
            " AND tc.table_schema = kcu.table_schema "
            " AND tc.table_name = kcu.table_name "
            "WHERE tc.constraint_type = 'PRIMARY KEY' "
            "  AND tc.table_schema = %s AND tc.table_name = %s "
            "ORDER BY kcu.ordinal_position",
            (schema, name),
        )
        return [row[0] for row in rows]

    def _list_tables(self) -> List[str]:
        rows = self._fetch(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = %s AND table_type = 'BASE TABLE' ORDER BY table_name",
            (self.schema,),
        )
        return [row[0] for row in rows]

    def build_select(
        self, table: str, columns: Sequence[str], filters: Optional[Mapping[str, Any]] = None
    ) -> Tuple[str, Tuple[Any, ...]]:
        query = (
            f"SELECT {', '.join(self.quote(c) for c in columns)} "
            f"FROM {self.quote(self.qualify_table(table))}"
        )
        filters = filters or {}
        if filters:
            query += " WHERE " + " AND ".join(f"{self.quote(c)} = %s" for c in filters)
        return query, tuple(filters.values())

    def _start_stream(self, query: str, params: Any, block_size: int):
        cursor = self._client.cursor(name=f"sync_stream_{uuid.uuid4().hex[:12]}")
        cursor.itersize = block_size
        try:
            cursor.execute(query, params or None)
        except Exception:
            cursor.close()
            self._client.rollback()
            raise

        def close_cursor():
            try:
                cursor.close()
            finally:
                self._client.rollback()

        return iter(lambda: cursor.fetchmany(block_size), []), close_cursor

    def _execute_ddl(self, ddl: str) -> None:
        try:
            with self._client.cursor() as cursor:
                cursor.execute(ddl)
            self._client.commit()
        except Exception:
            self._client.rollback()
            raise

    def _template(self, columns: List) -> str:
        return "(" + ", ".join("%s::jsonb" if is_json_column(c) else "%s" for c in columns) + ")"

    def _rows(self, columns: List, records: List[Dict[str, Any]]) -> List[Tuple]:
        return [
            tuple(
                dumps(record.get(c.name)) if is_json_column(c) else record.get(c.name)
                for c in columns
            )
            for record in records
        ]

    def upsert_sql(self, table: str, columns: List, key_columns: List[str]) -> str:
        names = [c.name for c in columns]
        sql = (
            f"INSERT INTO {self.quote(self.qualify_table(table))} "
            f"({', '.join(self.quote(n) for n in names)}) VALUES %s"
        )
        if not key_columns:
            return sql

        conflict = ", ".join(self.quote(k) for k in key_columns)
        updates = ", ".join(
            f"{self.quote(n)} = EXCLUDED.{self.quote(n)}" for n in names if n not in key_columns
        )
        if updates:
            return sql + f" ON CONFLICT ({conflict}) DO UPDATE SET {updates}"
        return sql + f" ON CONFLICT ({conflict}) DO NOTHING"

    def _write_batch(self, table: str, columns: List, records: List[Dict[str, Any]]) -> int:
        key_columns = [c.name for c in columns if c.is_primary_key]
        records = dedupe_by_key(records, key_columns)
        try:
            with self._client.cursor() as cursor:
                execute_values(
                    cursor,
                    self.upsert_sql(table, columns, key_columns),
                    self._rows(columns, records),
                    template=self._template(columns),
                    page_size=len(records),
                )
            self._client.commit()
        except Exception:
            self._client.rollback()
            raise
        return len(records)


class RedshiftConnector(PostgresConnector):
    """
    Amazon Redshift source and destination over the PostgreSQL protocol.

    Redshift has no ON CONFLICT: keyed batches go through a temporary
    staging table, then DELETE ... USING and INSERT in one transaction.
    SUPER columns are bound as JSON text and parsed with JSON_PARSE.
    """

    kind = WarehouseKind.REDSHIFT
    default_port = 5439

    def _template(self, columns: List) -> str:
        return "(" + ", ".join("JSON_PARSE(%s)" if is_json_column(c) else "%s" for c in columns) + ")"

    def _write_batch(self, table: str, columns: List, records: List[Dict[str, Any]]) -> int:
        key_columns = [c.name for c in columns if c.is_primary_key]
        if not key_columns:
            return super()._write_batch(table, columns, records)

        records = dedupe_by_key(records, key_columns)
        target = self.quote(self.qualify_table(table))
        staging = self.quote(f"sync_staging_{uuid.uuid4().hex[:12]}")
        column_list = ", ".join(self.quote(c.name) for c in columns)
        match = " AND ".join(f"{target}.{self.quote(k)} = {staging}.{self.quote(k)}" for k in key_columns)

        try:
            with self._client.cursor() as cursor:
                cursor.execute(f"CREATE TEMP TABLE {staging} (LIKE {target})")
                execute_values(
                    cursor,
                    f"INSERT INTO {staging} ({column_list}) VALUES %s",
                    self._rows(columns, records),
                    template=self._template(columns),
                    page_size=len(records),
                )
                cursor.execute(f"DELETE FROM {target} USING {staging} WHERE {match}")
                cursor.execute(f"INSERT INTO {target} ({column_list}) SELECT {column_list} FROM {staging}")
                cursor.execute(f"DROP TABLE {staging}")
            self._client.commit()
        except Exception:
            self._client.rollback()
            raise
        return len(records)
