"""
BigQuery connector (google-cloud-bigquery)
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from google.api_core.exceptions import NotFound
from google.cloud import bigquery
from google.oauth2 import service_account

from models.base import WarehouseKind
from pipeline.connectors.base import WarehouseConnector, dedupe_by_key, json_default

logger = logging.getLogger(__name__)


def _scalar_type(value: Any) -> str:
    if isinstance(value, bool):
        return "BOOL"
    if isinstance(value, int):
        return "INT64"
    if isinstance(value, float):
        return "FLOAT64"
    return "STRING"


class BigQueryConnector(WarehouseConnector):
    """
    BigQuery source and destination.

    Credentials:
        project_id (or projectId), dataset (or database),
        credentials (service-account dict) or keyFilename (its JSON text),
        location (optional)

    Appends use a load job; keyed batches are loaded into a staging table
    and MERGEd into the target, then the staging table is dropped.
    """

    kind = WarehouseKind.BIGQUERY

    NATIVE_TO_CANONICAL = {
        "int64": "Int64",
        "integer": "Int64",
        "float64": "Float64",
        "float": "Float64",
        "numeric": "Decimal(38,9)",
        "bignumeric": "Decimal(76,38)",
        "bool": "Bool",
        "boolean": "Bool",
        "string": "String",
        "bytes": "String",
        "date": "Date",
        "datetime": "DateTime",
        "timestamp": "DateTime",
        "time": "String",
        "record": "JSON",
        "struct": "JSON",
        "json": "JSON",
        "geography": "Geo",
        "interval": "String",
        "range": "JSON",
    }

    @property
    def project(self) -> str:
        return self._credentials.get("project_id") or self._credentials.get("projectId")

    @property
    def dataset(self) -> Optional[str]:
        return self._credentials.get("dataset") or self._credentials.get("database")

    def canonical_type(self, native_type: str) -> str:
        native = (native_type or "").strip()
        if native.upper().startswith("ARRAY<") and native.endswith(">"):
            return f"Array({self.canonical_type(native[6:-1])})"
        return super().canonical_type(native)

    def qualify_table(self, table: str) -> str:
        parts = table.split(".")
        if len(parts) == 3:
            return table
        if len(parts) == 2:
            return f"{self.project}.{table}"
        return f"{self.project}.{self.dataset}.{table}"

    def _connect(self):
        creds = self._credentials
        info = creds.get("credentials")
        if info is None and creds.get("keyFilename"):
            info = json.loads(creds["keyFilename"])

        kwargs: Dict[str, Any] = {"project": self.project}
        if info:
            kwargs["credentials"] = service_account.Credentials.from_service_account_info(info)
        if creds.get("location"):
            kwargs["location"] = creds["location"]
        return bigquery.Client(**kwargs)

    def _disconnect(self, client) -> None:
        client.close()

    def _get_table(self, table: str):
        try:
            return self._client.get_table(self.qualify_table(table))
        except NotFound:
            return None

    def _describe_columns(self, table: str) -> List[Tuple[str, str]]:
        bq_table = self._get_table(table)
        if bq_table is None:
            return []
        columns = []
        for field in bq_table.schema:
            native = field.field_type
            if field.mode == "REPEATED":
                native = f"ARRAY<{native}>"
            columns.append((field.name, native))
        return columns

    def _primary_key_columns(self, table: str) -> List[str]:
        bq_table = self._get_table(table)
        constraints = getattr(bq_table, "table_constraints", None) if bq_table else None
        if constraints is None or constraints.primary_key is None:
            return []
        return list(constraints.primary_key.columns)

    def _list_tables(self) -> List[str]:
        return [t.table_id for t in self._client.list_tables(f"{self.project}.{self.dataset}")]

    def build_select(
        self, table: str, columns: Sequence[str], filters: Optional[Mapping[str, Any]] = None
    ) -> Tuple[str, List[bigquery.ScalarQueryParameter]]:
        query = (
            f"SELECT {', '.join(self.quote(c) for c in columns)} "
            f"FROM {self.quote(self.qualify_table(table))}"
        )
        params = []
        conditions = []
        for i, (column, value) in enumerate((filters or {}).items()):
            conditions.append(f"{self.quote(column)} = @p{i}")
            params.append(bigquery.ScalarQueryParameter(f"p{i}", _scalar_type(value), value))
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        return query, params

    def _start_stream(self, query: str, params: Any, block_size: int):
        job_config = bigquery.QueryJobConfig(query_parameters=list(params or []))
        rows = self._client.query(query, job_config=job_config).result(page_size=block_size)
        blocks = ([tuple(row.values()) for row in page] for page in rows.pages)
        return blocks, None

    def _execute_ddl(self, ddl: str) -> None:
        self._client.query(ddl).result()

    def _load(self, table_ref: str, records: List[Dict[str, Any]], schema, disposition: str) -> None:
        job_config = bigquery.LoadJobConfig(
            schema=schema,
            write_disposition=disposition,
            source_format=bigquery.SourceFormat.NEWLINE_DELIMITED_JSON,
        )
        # Round-trip through json so every value is JSON-native
        rows = json.loads(json.dumps(records, default=json_default))
        self._client.load_table_from_json(rows, table_ref, job_config=job_config).result()

    def merge_sql(self, target: str, staging: str, columns: List, key_columns: List[str]) -> str:
        names = [c.name for c in columns]
        on_clause = " AND ".join(f"T.{self.quote(k)} = S.{self.quote(k)}" for k in key_columns)
        updates = ", ".join(
            f"{self.quote(n)} = S.{self.quote(n)}" for n in names if n not in key_columns
        )
        column_list = ", ".join(self.quote(n) for n in names)
        insert_values = ", ".join(f"S.{self.quote(n)}" for n in names)

        sql = f"MERGE {self.quote(target)} T USING {self.quote(staging)} S ON {on_clause}"
        if updates:
            sql += f" WHEN MATCHED THEN UPDATE SET {updates}"
        sql += f" WHEN NOT MATCHED THEN INSERT ({column_list}) VALUES ({insert_values})"
        return sql

    def _write_batch(self, table: str, columns: List, records: List[Dict[str, Any]]) -> int:
        target = self.qualify_table(table)
        schema = self._client.get_table(target).schema
        key_columns = [c.name for c in columns if c.is_primary_key]

        if not key_columns:
            self._load(target, records, schema, bigquery.WriteDisposition.WRITE_APPEND)
            return len(records)

        records = dedupe_by_key(records, key_columns)
        staging = f"{target}__staging_{uuid.uuid4().hex[:12]}"
        try:
            self._load(staging, records, schema, bigquery.WriteDisposition.WRITE_TRUNCATE)
            self._client.query(self.merge_sql(target, staging, columns, key_columns)).result()
        finally:
            self._client.delete_table(staging, not_found_ok=True)
        return len(records)
