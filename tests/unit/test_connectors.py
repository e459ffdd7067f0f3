"""
Unit tests for the connector base class, row streams, registry and introspection
"""

import asyncio

import pytest

from core.exceptions import (
    BatchWriteError,
    QueryError,
    SchemaIntrospectionError,
    UnsupportedWarehouseError,
    WarehouseConnectionError,
)
from models.base import WarehouseKind
from pipeline.connectors.base import RowStream, dedupe_by_key, dumps, is_json_column
from pipeline.connectors.registry import ConnectorRegistry, default_registry
from pipeline.introspection import introspect
from schemas.sync import ColumnDescriptor
from tests.fakes import FakeConnector, InMemoryWarehouse


@pytest.fixture
def warehouse(source_warehouse):
    return source_warehouse


@pytest.fixture
def connector(warehouse):
    return FakeConnector({"host": "ch.internal", "password": "pw"}, warehouse, WarehouseKind.CLICKHOUSE)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_open_and_idempotent_close(self, connector, warehouse):
        await connector.open()
        assert connector.is_open

        await connector.close()
        await connector.close()

        assert not connector.is_open
        assert warehouse.closed == 1

    @pytest.mark.asyncio
    async def test_close_without_open_is_noop(self, connector, warehouse):
        await connector.close()
        assert warehouse.closed == 0

    @pytest.mark.asyncio
    async def test_close_drops_credentials(self, connector):
        await connector.open()
        await connector.close()
        assert connector._credentials == {}

    @pytest.mark.asyncio
    async def test_connect_failure_is_retryable_connection_error(self, connector, warehouse):
        warehouse.fail_connects = 1
        with pytest.raises(WarehouseConnectionError) as exc_info:
            await connector.open()
        assert exc_info.value.retryable
        assert "pw" not in str(exc_info.value.to_dict()["context"])

    @pytest.mark.asyncio
    async def test_connect_finishing_after_timeout_is_closed(self, connector, warehouse):
        warehouse.connect_delays = [0.2]
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(connector.open(), 0.05)
        assert not connector.is_open

        for _ in range(40):
            if warehouse.closed:
                break
            await asyncio.sleep(0.05)

        assert warehouse.opened == 1
        assert warehouse.closed == 1
        assert not connector.is_open

    @pytest.mark.asyncio
    async def test_calls_require_open_connection(self, connector):
        with pytest.raises(WarehouseConnectionError):
            await connector.describe_columns("events")


class TestStreaming:

    @pytest.mark.asyncio
    async def test_stream_yields_blocks_in_order(self, connector, warehouse):
        await connector.open()
        query, params = connector.build_select("events", ["id", "name", "amount"])
        stream = await connector.open_stream(query, params, block_size=2)

        blocks = [block async for block in stream]

        assert blocks == [[(1, "alpha", 1.5), (2, "beta", 2.25)], [(3, "gamma", 3.0)]]
        assert stream.closed
        assert warehouse.streams_closed == 1

    @pytest.mark.asyncio
    async def test_stream_pulls_lazily(self, connector, warehouse):
        await connector.open()
        query, params = connector.build_select("events", ["id", "name", "amount"])
        stream = await connector.open_stream(query, params, block_size=1)

        await stream.__anext__()
        assert warehouse.rows_read == 1

        await stream.close()
        await stream.close()
        assert warehouse.streams_closed == 1

    @pytest.mark.asyncio
    async def test_broken_stream_raises_query_error(self, connector, warehouse):
        warehouse.fail_stream_at_block = 1
        await connector.open()
        query, params = connector.build_select("events", ["id", "name", "amount"])
        stream = await connector.open_stream(query, params, block_size=2)

        await stream.__anext__()
        with pytest.raises(QueryError):
            await stream.__anext__()
        await stream.close()

    @pytest.mark.asyncio
    async def test_row_stream_over_plain_iterator(self):
        closed = []
        stream = RowStream(iter([[(1,)], [(2,)]]), on_close=lambda: closed.append(True))
        assert [block async for block in stream] == [[(1,)], [(2,)]]
        assert closed == [True]


class TestWrites:

    @pytest.mark.asyncio
    async def test_empty_batch_writes_nothing(self, connector, warehouse):
        await connector.open()
        assert await connector.write_batch("events", [], []) == 0
        assert warehouse.write_calls == 0

    @pytest.mark.asyncio
    async def test_rejected_batch_raises_batch_write_error(self, connector, warehouse):
        warehouse.fail_writes = 1
        await connector.open()
        columns = [ColumnDescriptor(name="id", source_type="Int32")]
        with pytest.raises(BatchWriteError):
            await connector.write_batch("events", columns, [{"id": 1}])

    @pytest.mark.asyncio
    async def test_ensure_table_renders_dialect_ddl(self, connector, warehouse):
        await connector.open()
        columns = [ColumnDescriptor(name="id", source_type="Int32", is_primary_key=True)]
        await connector.ensure_table("copy", columns)
        assert warehouse.ddl == [
            "CREATE TABLE IF NOT EXISTS `copy` (`id` Int32) ENGINE = ReplacingMergeTree ORDER BY (`id`)"
        ]


class TestHelpers:

    def test_dedupe_keeps_last_value_at_first_position(self):
        records = [{"id": 1, "v": "a"}, {"id": 2, "v": "b"}, {"id": 1, "v": "c"}]
        assert dedupe_by_key(records, ["id"]) == [{"id": 1, "v": "c"}, {"id": 2, "v": "b"}]

    def test_dedupe_without_keys_is_identity(self):
        records = [{"id": 1}, {"id": 1}]
        assert dedupe_by_key(records, []) == records

    def test_is_json_column(self):
        assert is_json_column(ColumnDescriptor(name="tags", source_type="Array(String)"))
        assert is_json_column(ColumnDescriptor(name="attrs", source_type="Nullable(JSON)"))
        assert not is_json_column(ColumnDescriptor(name="id", source_type="Int32"))

    def test_dumps(self):
        assert dumps(None) is None
        assert dumps({"a": [1, 2]}) == '{"a": [1, 2]}'


class TestRegistry:

    def test_create_registered_kind(self, warehouse):
        registry = ConnectorRegistry({
            WarehouseKind.POSTGRES: lambda creds: FakeConnector(creds, warehouse, WarehouseKind.POSTGRES)
        })
        connector = registry.create("postgres", {"host": "db"})
        assert connector.kind == WarehouseKind.POSTGRES
        assert registry.kinds() == [WarehouseKind.POSTGRES]

    def test_unknown_kind(self):
        registry = ConnectorRegistry()
        with pytest.raises(UnsupportedWarehouseError):
            registry.create(WarehouseKind.SNOWFLAKE, {})
        with pytest.raises(UnsupportedWarehouseError):
            registry.create("oracle", {})

    def test_default_registry_covers_every_kind(self):
        assert set(default_registry().kinds()) == set(WarehouseKind)


class TestIntrospection:

    @pytest.mark.asyncio
    async def test_columns_in_catalog_order_with_primary_key(self, connector):
        await connector.open()
        columns = await introspect(connector, "events")

        assert [c.name for c in columns] == ["id", "name", "amount"]
        assert [c.source_type for c in columns] == ["Int32", "String", "Float64"]
        assert [c.is_primary_key for c in columns] == [True, False, False]

    @pytest.mark.asyncio
    async def test_list_tables(self, connector):
        await connector.open()
        assert await connector.list_tables() == ["events"]

    @pytest.mark.asyncio
    async def test_missing_table(self, connector):
        await connector.open()
        with pytest.raises(SchemaIntrospectionError) as exc_info:
            await introspect(connector, "nope")
        assert not exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_unknown_primary_key_columns_ignored(self):
        warehouse = InMemoryWarehouse()
        warehouse.add_table("t", columns=[("a", "String")], rows=[], primary_key=["ghost"])
        connector = FakeConnector({}, warehouse, WarehouseKind.CLICKHOUSE)
        await connector.open()

        columns = await introspect(connector, "t")
        assert columns == [ColumnDescriptor(name="a", source_type="String", is_primary_key=False)]

    @pytest.mark.asyncio
    async def test_duplicate_column_names(self):
        warehouse = InMemoryWarehouse()
        warehouse.add_table("t", columns=[("a", "String"), ("a", "Int32")], rows=[])
        connector = FakeConnector({}, warehouse, WarehouseKind.CLICKHOUSE)
        await connector.open()

        with pytest.raises(SchemaIntrospectionError):
            await introspect(connector, "t")

    @pytest.mark.asyncio
    async def test_other_warehouses_get_nullable_non_key_columns(self):
        warehouse = InMemoryWarehouse()
        warehouse.add_table(
            "places",
            columns=[("id", "Int32"), ("spot", "Geo"), ("note", "Nullable(String)")],
            rows=[],
            primary_key=["id"],
        )
        connector = FakeConnector({}, warehouse, WarehouseKind.POSTGRES)
        await connector.open()

        columns = await introspect(connector, "places")
        assert [c.source_type for c in columns] == ["Int32", "Nullable(Geo)", "Nullable(String)"]

    @pytest.mark.asyncio
    async def test_clickhouse_tags_kept_as_reported(self):
        warehouse = InMemoryWarehouse()
        warehouse.add_table("t", columns=[("a", "String"), ("b", "Nullable(Int32)")], rows=[])
        connector = FakeConnector({}, warehouse, WarehouseKind.CLICKHOUSE)
        await connector.open()

        columns = await introspect(connector, "t")
        assert [c.source_type for c in columns] == ["String", "Nullable(Int32)"]
