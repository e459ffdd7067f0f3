"""
ClickHouse connector (clickhouse-connect, HTTP interface)
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import clickhouse_connect

from models.base import WarehouseKind
from pipeline.connectors.base import WarehouseConnector, dumps, is_json_column
from pipeline.transformers.type_mapping import map_type, split_type, unwrap

logger = logging.getLogger(__name__)


def _param_type(value: Any) -> str:
    if isinstance(value, bool):
        return "Bool"
    if isinstance(value, int):
        return "Int64"
    if isinstance(value, float):
        return "Float64"
    return "String"


class ClickHouseConnector(WarehouseConnector):
    """
    ClickHouse source and destination.

    Credentials:
        host: hostname, or a full URL (https://host:8443) used as DSN
        port, username, password, database, secure (optional)

    Catalog types are already canonical tags. Writes are plain inserts
    into a ReplacingMergeTree table, so retries may duplicate rows until
    the engine merges parts.
    """

    kind = WarehouseKind.CLICKHOUSE

    @property
    def database(self) -> Optional[str]:
        return self._credentials.get("database")

    def _connect(self):
        creds = self._credentials
        host = creds.get("host") or creds.get("url")
        kwargs: Dict[str, Any] = {
            "username": creds.get("username") or creds.get("user") or "default",
            "password": creds.get("password", ""),
            "connect_timeout": creds.get("connect_timeout", 30),
            "send_receive_timeout": creds.get("send_receive_timeout", 300),
        }
        if self.database:
            kwargs["database"] = self.database

        if host and "://" in host:
            client = clickhouse_connect.get_client(dsn=host, **kwargs)
        else:
            client = clickhouse_connect.get_client(
                host=host or "localhost",
                port=int(creds.get("port", 8443 if creds.get("secure", True) else 8123)),
                secure=bool(creds.get("secure", True)),
                **kwargs
            )
        client.ping()
        return client

    def _disconnect(self, client) -> None:
        client.close()

    def _database_clause(self, schema: Optional[str]) -> Tuple[str, Dict[str, Any]]:
        if schema:
            return "database = {database:String}", {"database": schema}
        return "database = currentDatabase()", {}

    def _describe_columns(self, table: str) -> List[Tuple[str, str]]:
        schema, name = self._split_table(table, self.database)
        clause, params = self._database_clause(schema)
        result = self._client.query(
            f"SELECT name, type FROM system.columns WHERE {clause} AND table = {{table:String}} ORDER BY position",
            parameters={**params, "table": name},
        )
        return [(row[0], row[1]) for row in result.result_rows]

    def _primary_key_columns(self, table: str) -> List[str]:
        schema, name = self._split_table(table, self.database)
        clause, params = self._database_clause(schema)
        result = self._client.query(
            f"SELECT name FROM system.columns WHERE {clause} AND table = {{table:String}} "
            f"AND is_in_primary_key = 1 ORDER BY position",
            parameters={**params, "table": name},
        )
        return [row[0] for row in result.result_rows]

    def _list_tables(self) -> List[str]:
        clause, params = self._database_clause(self.database)
        result = self._client.query(
            f"SELECT name FROM system.tables WHERE {clause} ORDER BY name",
            parameters=params,
        )
        return [row[0] for row in result.result_rows]

    def build_select(
        self, table: str, columns: Sequence[str], filters: Optional[Mapping[str, Any]] = None
    ) -> Tuple[str, Dict[str, Any]]:
        query = f"SELECT {', '.join(self.quote(c) for c in columns)} FROM {self.quote(table)}"
        params: Dict[str, Any] = {}
        conditions = []
        for i, (column, value) in enumerate((filters or {}).items()):
            conditions.append(f"{self.quote(column)} = {{p{i}:{_param_type(value)}}}")
            params[f"p{i}"] = value
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        return query, params

    def _start_stream(self, query: str, params: Any, block_size: int):
        stream = self._client.query_row_block_stream(
            query,
            parameters=params or None,
            settings={"max_block_size": block_size},
        )
        stream.__enter__()
        return iter(stream), lambda: stream.__exit__(None, None, None)

    def _execute_ddl(self, ddl: str) -> None:
        self._client.command(ddl)

    def _write_batch(self, table: str, columns: List, records: List[Dict[str, Any]]) -> int:
        schema, name = self._split_table(table, self.database)
        names = [c.name for c in columns]
        # JSON-shaped values bound for String columns go in serialized
        as_text = {
            c.name for c in columns
            if is_json_column(c) and split_type(unwrap(map_type(self.kind, c.source_type)))[0] == "String"
        }
        data = [
            [dumps(record.get(n)) if n in as_text else record.get(n) for n in names]
            for record in records
        ]
        self._client.insert(name, data, column_names=names, database=schema or "")
        return len(data)
