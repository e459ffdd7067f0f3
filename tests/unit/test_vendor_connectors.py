"""
Unit tests for the vendor-backed connectors with mocked SDK clients
"""

from unittest.mock import MagicMock, patch

import pytest
from google.api_core.exceptions import NotFound
from google.cloud import bigquery

from core.exceptions import BatchWriteError
from pipeline.connectors.bigquery import BigQueryConnector
from pipeline.connectors.clickhouse import ClickHouseConnector
from pipeline.connectors.postgres import PostgresConnector, RedshiftConnector
from pipeline.connectors.snowflake import SnowflakeConnector
from schemas.sync import ColumnDescriptor


@pytest.fixture
def columns():
    return [
        ColumnDescriptor(name="id", source_type="Int32", is_primary_key=True),
        ColumnDescriptor(name="name", source_type="String"),
        ColumnDescriptor(name="tags", source_type="Array(String)"),
    ]


@pytest.fixture
def records():
    return [
        {"id": 1, "name": "a", "tags": ["x"]},
        {"id": 2, "name": "b", "tags": None},
        {"id": 1, "name": "c", "tags": []},
    ]


def _opened(connector, client=None):
    connector._client = client or MagicMock()
    return connector


# ============================================================================
# ClickHouse
# ============================================================================

class TestClickHouseConnector:

    @pytest.mark.asyncio
    async def test_open_with_url_uses_dsn(self):
        connector = ClickHouseConnector({"host": "https://ch.internal:8443", "username": "reader", "password": "pw"})
        with patch("pipeline.connectors.clickhouse.clickhouse_connect.get_client") as get_client:
            await connector.open()

        kwargs = get_client.call_args.kwargs
        assert kwargs["dsn"] == "https://ch.internal:8443"
        assert kwargs["username"] == "reader"
        get_client.return_value.ping.assert_called_once()

    @pytest.mark.asyncio
    async def test_open_with_host_and_port(self):
        connector = ClickHouseConnector({"host": "ch.internal", "port": 8123, "secure": False})
        with patch("pipeline.connectors.clickhouse.clickhouse_connect.get_client") as get_client:
            await connector.open()

        kwargs = get_client.call_args.kwargs
        assert kwargs["host"] == "ch.internal"
        assert kwargs["port"] == 8123
        assert kwargs["secure"] is False

    @pytest.mark.asyncio
    async def test_describe_columns_from_system_columns(self):
        connector = _opened(ClickHouseConnector({"host": "ch"}))
        connector._client.query.return_value.result_rows = [("id", "UInt64"), ("name", "Nullable(String)")]

        assert await connector.describe_columns("events") == [("id", "UInt64"), ("name", "Nullable(String)")]

        query, = connector._client.query.call_args.args
        assert "system.columns" in query
        assert "currentDatabase()" in query
        assert "ORDER BY position" in query
        assert connector._client.query.call_args.kwargs["parameters"] == {"table": "events"}

    @pytest.mark.asyncio
    async def test_primary_key_in_named_database(self):
        connector = _opened(ClickHouseConnector({"host": "ch", "database": "analytics"}))
        connector._client.query.return_value.result_rows = [("id",)]

        assert await connector.primary_key_columns("events") == ["id"]
        assert connector._client.query.call_args.kwargs["parameters"] == {"database": "analytics", "table": "events"}
        assert "is_in_primary_key = 1" in connector._client.query.call_args.args[0]

    def test_build_select_uses_server_side_parameters(self):
        connector = ClickHouseConnector({"host": "ch"})
        query, params = connector.build_select("events", ["id", "name"], {"org_id": 42})
        assert query == "SELECT `id`, `name` FROM `events` WHERE `org_id` = {p0:Int64}"
        assert params == {"p0": 42}

    @pytest.mark.asyncio
    async def test_stream_blocks_and_exit(self):
        connector = _opened(ClickHouseConnector({"host": "ch"}))
        block_stream = connector._client.query_row_block_stream.return_value
        block_stream.__iter__.return_value = iter([[(1, "a")], [(2, "b")]])

        stream = await connector.open_stream("SELECT 1", {}, block_size=500)
        blocks = [block async for block in stream]

        assert blocks == [[(1, "a")], [(2, "b")]]
        assert connector._client.query_row_block_stream.call_args.kwargs["settings"] == {"max_block_size": 500}
        block_stream.__exit__.assert_called_once()

    @pytest.mark.asyncio
    async def test_write_batch_inserts_positional_rows(self, columns, records):
        connector = _opened(ClickHouseConnector({"host": "ch"}))

        written = await connector.write_batch("events", columns, records)

        assert written == 3
        connector._client.insert.assert_called_once_with(
            "events",
            [[1, "a", ["x"]], [2, "b", None], [1, "c", []]],
            column_names=["id", "name", "tags"],
            database="",
        )

    @pytest.mark.asyncio
    async def test_write_batch_serializes_json_values_for_string_columns(self):
        connector = _opened(ClickHouseConnector({"host": "ch"}))
        columns = [
            ColumnDescriptor(name="id", source_type="Int32", is_primary_key=True),
            ColumnDescriptor(name="spot", source_type="Nullable(Geo)"),
            ColumnDescriptor(name="attrs", source_type="Nullable(JSON)"),
        ]
        records = [
            {"id": 1, "spot": {"type": "Point", "coordinates": [1, 2]}, "attrs": {"a": 1}},
            {"id": 2, "spot": None, "attrs": None},
        ]

        await connector.write_batch("places", columns, records)

        rows = connector._client.insert.call_args.args[1]
        assert rows == [
            [1, '{"type": "Point", "coordinates": [1, 2]}', {"a": 1}],
            [2, None, None],
        ]


# ============================================================================
# Snowflake
# ============================================================================

class TestSnowflakeConnector:

    @pytest.mark.parametrize("native,canonical", [
        ("NUMBER(10,0)", "Int64"),
        ("NUMBER(38,0)", "Int128"),
        ("NUMBER(12,2)", "Decimal(12,2)"),
        ("TIMESTAMP_NTZ", "DateTime"),
        ("VARIANT", "JSON"),
        ("TEXT", "String"),
        ("VARCHAR(16777216)", "String"),
        ("BOOLEAN", "Bool"),
    ])
    def test_canonical_types(self, native, canonical):
        assert SnowflakeConnector({}).canonical_type(native) == canonical

    @pytest.mark.asyncio
    async def test_open_passes_credentials(self):
        connector = SnowflakeConnector({
            "account": "acme-xy12345", "username": "loader", "password": "pw",
            "database": "RAW", "warehouse": "LOAD_WH",
        })
        with patch("pipeline.connectors.snowflake.snowflake.connector.connect") as connect:
            await connector.open()

        kwargs = connect.call_args.kwargs
        assert kwargs["account"] == "acme-xy12345"
        assert kwargs["user"] == "loader"
        assert kwargs["schema"] == "PUBLIC"
        assert kwargs["warehouse"] == "LOAD_WH"
        assert "role" not in kwargs

    @pytest.mark.asyncio
    async def test_describe_columns(self):
        connector = _opened(SnowflakeConnector({"schema": "ANALYTICS"}))
        cursor = connector._client.cursor.return_value
        cursor.fetchall.return_value = [("ID", "NUMBER", 38, 0), ("NAME", "TEXT", None, None)]

        assert await connector.describe_columns("events") == [("ID", "Int128"), ("NAME", "String")]
        assert cursor.execute.call_args.args[1] == ("ANALYTICS", "events")
        cursor.close.assert_called_once()

    def test_build_select(self):
        query, params = SnowflakeConnector({}).build_select("events", ["id"], {"org_id": 42})
        assert query == 'SELECT "id" FROM "PUBLIC"."events" WHERE "org_id" = %(p0)s'
        assert params == {"p0": 42}

    def test_merge_sql(self, columns):
        sql = SnowflakeConnector({}).merge_sql("events", columns, ["id"], 2)
        assert sql == (
            'MERGE INTO "PUBLIC"."events" AS t USING ('
            'SELECT column1 AS "id", column2 AS "name", PARSE_JSON(column3) AS "tags" '
            'FROM VALUES (%s, %s, %s), (%s, %s, %s)) AS s '
            'ON t."id" = s."id" '
            'WHEN MATCHED THEN UPDATE SET t."name" = s."name", t."tags" = s."tags" '
            'WHEN NOT MATCHED THEN INSERT ("id", "name", "tags") VALUES (s."id", s."name", s."tags")'
        )

    def test_merge_sql_without_keys_inserts(self, columns):
        sql = SnowflakeConnector({}).merge_sql("events", columns, [], 1)
        assert sql.startswith('INSERT INTO "PUBLIC"."events" ("id", "name", "tags") SELECT column1 AS "id"')
        assert "MERGE" not in sql

    @pytest.mark.asyncio
    async def test_write_batch_dedupes_and_binds_parameters(self, columns, records):
        connector = _opened(SnowflakeConnector({}))
        cursor = connector._client.cursor.return_value

        written = await connector.write_batch("events", columns, records)

        assert written == 2
        sql, params = cursor.execute.call_args.args
        assert sql.startswith("MERGE INTO")
        assert params == [1, "c", "[]", 2, "b", None]
        # Values are bound, never inlined
        assert "'c'" not in sql

    @pytest.mark.asyncio
    async def test_rejected_batch(self, columns, records):
        connector = _opened(SnowflakeConnector({}))
        connector._client.cursor.return_value.execute.side_effect = RuntimeError("constraint violated")

        with pytest.raises(BatchWriteError) as exc_info:
            await connector.write_batch("events", columns, records)
        assert exc_info.value.retryable


# ============================================================================
# BigQuery
# ============================================================================

class TestBigQueryConnector:

    @pytest.fixture
    def connector(self):
        connector = _opened(BigQueryConnector({"project_id": "proj", "dataset": "ds"}))
        connector._client.get_table.return_value.schema = [bigquery.SchemaField("line", "STRING")]
        return connector

    def test_qualify_table(self, connector):
        assert connector.qualify_table("events") == "proj.ds.events"
        assert connector.qualify_table("other.events") == "proj.other.events"
        assert connector.qualify_table("p2.d2.events") == "p2.d2.events"

    @pytest.mark.parametrize("native,canonical", [
        ("INTEGER", "Int64"),
        ("FLOAT", "Float64"),
        ("NUMERIC", "Decimal(38,9)"),
        ("TIMESTAMP", "DateTime"),
        ("RECORD", "JSON"),
        ("ARRAY<INT64>", "Array(Int64)"),
    ])
    def test_canonical_types(self, connector, native, canonical):
        assert connector.canonical_type(native) == canonical

    @pytest.mark.asyncio
    async def test_describe_columns_marks_repeated_fields(self, connector):
        connector._client.get_table.return_value.schema = [
            bigquery.SchemaField("id", "INTEGER"),
            bigquery.SchemaField("tags", "STRING", mode="REPEATED"),
        ]
        assert await connector.describe_columns("events") == [("id", "Int64"), ("tags", "Array(String)")]
        connector._client.get_table.assert_called_with("proj.ds.events")

    @pytest.mark.asyncio
    async def test_missing_table_has_no_columns(self, connector):
        connector._client.get_table.side_effect = NotFound("no such table")
        assert await connector.describe_columns("events") == []

    def test_build_select_uses_query_parameters(self, connector):
        query, params = connector.build_select("events", ["id"], {"org_id": "acme"})
        assert query == "SELECT `id` FROM `proj.ds.events` WHERE `org_id` = @p0"
        assert params[0].name == "p0"
        assert params[0].type_ == "STRING"
        assert params[0].value == "acme"

    @pytest.mark.asyncio
    async def test_append_uses_load_job(self, connector):
        plain = [ColumnDescriptor(name="line", source_type="String")]
        await connector.write_batch("logs", plain, [{"line": "a"}, {"line": "b"}])

        rows, table_ref = connector._client.load_table_from_json.call_args.args
        job_config = connector._client.load_table_from_json.call_args.kwargs["job_config"]
        assert rows == [{"line": "a"}, {"line": "b"}]
        assert table_ref == "proj.ds.logs"
        assert job_config.write_disposition == bigquery.WriteDisposition.WRITE_APPEND
        connector._client.query.assert_not_called()

    @pytest.mark.asyncio
    async def test_keyed_write_merges_through_staging_table(self, connector, columns, records):
        written = await connector.write_batch("events", columns, records)

        assert written == 2
        rows, staging = connector._client.load_table_from_json.call_args.args
        assert staging.startswith("proj.ds.events__staging_")
        assert rows == [{"id": 1, "name": "c", "tags": []}, {"id": 2, "name": "b", "tags": None}]

        merge = connector._client.query.call_args.args[0]
        assert merge.startswith(f"MERGE `proj.ds.events` T USING `{staging}` S ON T.`id` = S.`id`")
        connector._client.delete_table.assert_called_once_with(staging, not_found_ok=True)

    @pytest.mark.asyncio
    async def test_staging_table_dropped_when_merge_fails(self, connector, columns, records):
        connector._client.query.side_effect = RuntimeError("merge failed")

        with pytest.raises(BatchWriteError):
            await connector.write_batch("events", columns, records)
        connector._client.delete_table.assert_called_once()


# ============================================================================
# Postgres / Redshift
# ============================================================================

class TestPostgresConnector:

    @pytest.mark.parametrize("native,canonical", [
        ("integer", "Int32"),
        ("bigint", "Int64"),
        ("numeric(10,2)", "Decimal(10,2)"),
        ("timestamp with time zone", "DateTime"),
        ("jsonb", "JSON"),
        ("character varying", "String"),
        ("USER-DEFINED", "USER-DEFINED"),
    ])
    def test_canonical_types(self, native, canonical):
        assert PostgresConnector({}).canonical_type(native) == canonical

    @pytest.mark.asyncio
    async def test_open_default_ports(self):
        with patch("pipeline.connectors.postgres.psycopg2.connect") as connect:
            await PostgresConnector({"host": "db", "database": "app"}).open()
            assert connect.call_args.kwargs["port"] == 5432
            assert connect.call_args.kwargs["dbname"] == "app"

            await RedshiftConnector({"host": "rs", "database": "dw"}).open()
            assert connect.call_args.kwargs["port"] == 5439

    @pytest.mark.asyncio
    async def test_describe_columns_keeps_numeric_precision(self):
        connector = _opened(PostgresConnector({}))
        cursor = connector._client.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [("id", "integer", 32, 0), ("amount", "numeric", 10, 2)]

        assert await connector.describe_columns("events") == [("id", "Int32"), ("amount", "Decimal(10,2)")]
        assert cursor.execute.call_args.args[1] == ("public", "events")
        connector._client.rollback.assert_called()

    def test_build_select(self):
        query, params = PostgresConnector({"schema": "app"}).build_select("events", ["id"], {"org_id": 42})
        assert query == 'SELECT "id" FROM "app"."events" WHERE "org_id" = %s'
        assert params == (42,)

    def test_upsert_sql(self, columns):
        sql = PostgresConnector({}).upsert_sql("events", columns, ["id"])
        assert sql == (
            'INSERT INTO "public"."events" ("id", "name", "tags") VALUES %s '
            'ON CONFLICT ("id") DO UPDATE SET "name" = EXCLUDED."name", "tags" = EXCLUDED."tags"'
        )

    def test_upsert_sql_all_key_columns(self):
        keys = [ColumnDescriptor(name="id", source_type="Int32", is_primary_key=True)]
        assert PostgresConnector({}).upsert_sql("t", keys, ["id"]).endswith('ON CONFLICT ("id") DO NOTHING')

    @pytest.mark.asyncio
    async def test_write_batch_uses_execute_values(self, columns, records):
        connector = _opened(PostgresConnector({}))
        cursor = connector._client.cursor.return_value.__enter__.return_value

        with patch("pipeline.connectors.postgres.execute_values") as execute_values:
            written = await connector.write_batch("events", columns, records)

        assert written == 2
        args, kwargs = execute_values.call_args
        assert args[0] is cursor
        assert "ON CONFLICT" in args[1]
        assert args[2] == [(1, "c", "[]"), (2, "b", None)]
        assert kwargs["template"] == "(%s, %s, %s::jsonb)"
        connector._client.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(self, columns, records):
        connector = _opened(PostgresConnector({}))

        with patch("pipeline.connectors.postgres.execute_values", side_effect=RuntimeError("deadlock")):
            with pytest.raises(BatchWriteError):
                await connector.write_batch("events", columns, records)

        connector._client.rollback.assert_called_once()
        connector._client.commit.assert_not_called()


class TestRedshiftConnector:

    @pytest.mark.asyncio
    async def test_keyed_write_uses_staging_table(self, columns, records):
        connector = _opened(RedshiftConnector({}))
        cursor = connector._client.cursor.return_value.__enter__.return_value

        with patch("pipeline.connectors.postgres.execute_values") as execute_values:
            written = await connector.write_batch("events", columns, records)

        assert written == 2
        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert statements[0].startswith('CREATE TEMP TABLE "sync_staging_')
        assert statements[0].endswith('(LIKE "public"."events")')
        assert statements[1].startswith('DELETE FROM "public"."events" USING "sync_staging_')
        assert statements[2].startswith('INSERT INTO "public"."events" ("id", "name", "tags") SELECT')
        assert statements[3].startswith('DROP TABLE "sync_staging_')
        assert execute_values.call_args.kwargs["template"] == "(%s, %s, JSON_PARSE(%s))"
        connector._client.commit.assert_called_once()

    @pytest.mark.asyncio
    async def test_append_without_key(self):
        connector = _opened(RedshiftConnector({}))
        plain = [ColumnDescriptor(name="line", source_type="String")]

        with patch("pipeline.connectors.postgres.execute_values") as execute_values:
            await connector.write_batch("logs", plain, [{"line": "a"}])

        sql = execute_values.call_args.args[1]
        assert sql == 'INSERT INTO "public"."logs" ("line") VALUES %s'
