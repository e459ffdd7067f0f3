"""
Abstract base class for warehouse connectors with a uniform async contract
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from core.exceptions import (
    BatchWriteError,
    QueryError,
    SyncError,
    WarehouseConnectionError,
)
from models.base import WarehouseKind
from pipeline.transformers.type_mapping import create_table_sql, quote_identifier, type_family

logger = logging.getLogger(__name__)

Row = Sequence[Any]
Record = Dict[str, Any]

_EXHAUSTED = object()


def json_default(value: Any) -> Any:
    """json.dumps fallback for values the converter leaves native."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, default=json_default)


def is_json_column(column) -> bool:
    """Whether a column's destination type holds serialized JSON."""
    return type_family(column.source_type) in ("array", "structured", "geo")


def dedupe_by_key(records: List[Record], key_columns: Sequence[str]) -> List[Record]:
    """
    Collapse records sharing a primary key.

    The last record wins; the position of the first occurrence is kept so
    the batch stays in source order.
    """
    if not key_columns:
        return list(records)

    positions: Dict[Tuple, int] = {}
    result: List[Record] = []
    for record in records:
        key = tuple(json.dumps(record.get(c), default=json_default) for c in key_columns)
        if key in positions:
            result[positions[key]] = record
        else:
            positions[key] = len(result)
            result.append(record)

    if len(result) != len(records):
        logger.debug(f"Collapsed {len(records) - len(result)} duplicate keys in batch")
    return result


class RowStream:
    """
    Async iterator over row blocks pulled from a blocking source cursor.

    Each `__anext__` fetches exactly one block in a worker thread, so the
    source cursor only advances while the stream is consumed. Not
    restartable: re-run the query for a fresh stream.
    """

    def __init__(
        self,
        blocks: Iterator[Sequence[Row]],
        on_close: Optional[Callable[[], None]] = None,
        description: str = "source stream",
    ):
        self._blocks = blocks
        self._on_close = on_close
        self._description = description
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "RowStream":
        return self

    async def __anext__(self) -> List[Row]:
        if self._closed:
            raise StopAsyncIteration

        try:
            block = await asyncio.to_thread(next, self._blocks, _EXHAUSTED)
        except SyncError:
            raise
        except Exception as e:
            raise QueryError(
                f"{self._description} failed while streaming",
                context={"stream": self._description},
                original_exception=e
            )

        if block is _EXHAUSTED:
            await self.close()
            raise StopAsyncIteration
        return list(block)

    async def close(self) -> None:
        """Release the cursor; safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        closers = []
        if self._on_close is not None:
            closers.append(self._on_close)
        if hasattr(self._blocks, "close"):
            closers.append(self._blocks.close)

        for closer in closers:
            await asyncio.to_thread(closer)


class WarehouseConnector(ABC):
    """
    Abstract base class for all warehouse backends.

    Responsibilities:
    - Connection lifecycle (open, idempotent close)
    - Column catalog and primary-key introspection
    - Streaming reads in row blocks
    - Create-if-absent DDL and batch writes

    Subclasses implement the blocking `_`-prefixed hooks against their
    vendor SDK; this class runs them in worker threads and translates
    SDK failures into the pipeline's error taxonomy.
    """

    kind: WarehouseKind

    # Native catalog type -> canonical source type tag
    NATIVE_TO_CANONICAL: Mapping[str, str] = {}

    def __init__(self, credentials: Dict[str, Any]):
        self._credentials = dict(credentials)
        self._client: Any = None
        self._late_closes: Set["asyncio.Future"] = set()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} open={self.is_open}>"

    @property
    def is_open(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """
        Open the backend connection.

        The connect runs in a worker thread that outlives a cancelled
        await (e.g. a connect timeout); a client that arrives after the
        caller gave up is closed as soon as it exists.

        Raises:
            WarehouseConnectionError: On auth or network failure (retryable)
        """
        if self._client is not None:
            return
        attempt = asyncio.ensure_future(asyncio.to_thread(self._connect))
        try:
            client = await asyncio.shield(attempt)
        except asyncio.CancelledError:
            attempt.add_done_callback(self._discard_late_client)
            raise
        except SyncError:
            raise
        except Exception as e:
            raise WarehouseConnectionError(
                f"Could not connect to {self.kind.value}",
                context={"warehouse": self.kind.value},
                original_exception=e
            )
        self._client = client
        logger.info(f"Opened {self.kind.value} connection")

    def _discard_late_client(self, attempt: "asyncio.Future") -> None:
        if attempt.cancelled() or attempt.exception() is not None:
            return
        client = attempt.result()
        logger.warning(f"Closing {self.kind.value} connection opened after its attempt was abandoned")
        closing = asyncio.ensure_future(asyncio.to_thread(self._disconnect, client))
        self._late_closes.add(closing)
        closing.add_done_callback(self._late_close_done)

    def _late_close_done(self, closing: "asyncio.Future") -> None:
        self._late_closes.discard(closing)
        if not closing.cancelled() and closing.exception() is not None:
            logger.warning(
                f"Closing abandoned {self.kind.value} connection failed: {closing.exception()}"
            )

    async def close(self) -> None:
        """
        Release backend resources; a no-op if never opened or already closed.

        Decrypted credentials are dropped here, so a closed connector
        cannot be reopened.
        """
        client, self._client = self._client, None
        self._credentials = {}
        if client is None:
            return
        await asyncio.to_thread(self._disconnect, client)
        logger.info(f"Closed {self.kind.value} connection")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def describe_columns(self, table: str) -> List[Tuple[str, str]]:
        """(name, canonical type tag) per column, in catalog order."""
        rows = await self._call(self._describe_columns, table, action="column catalog query")
        return [(name, self.canonical_type(native)) for name, native in rows]

    async def primary_key_columns(self, table: str) -> List[str]:
        return list(await self._call(self._primary_key_columns, table, action="primary key query"))

    async def list_tables(self) -> List[str]:
        return list(await self._call(self._list_tables, action="table listing"))

    def canonical_type(self, native_type: str) -> str:
        """Map a native catalog type to the canonical tag vocabulary."""
        if not self.NATIVE_TO_CANONICAL:
            return native_type
        native = (native_type or "").strip()
        base, _, args = native.partition("(")
        canonical = self.NATIVE_TO_CANONICAL.get(base.strip().lower(), native)
        args = args.rstrip(")").replace(" ", "")
        if canonical == "Decimal" and args:
            return f"Decimal({args})"
        return canonical

    def qualify_table(self, table: str) -> str:
        """Fully qualified table name used in generated SQL."""
        return table

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @abstractmethod
    def build_select(
        self, table: str, columns: Sequence[str], filters: Optional[Mapping[str, Any]] = None
    ) -> Tuple[str, Any]:
        """
        Build a parameterized SELECT for the dialect.

        Returns:
            (query text, parameters in the driver's bind style)
        """
        pass

    async def open_stream(self, query: str, params: Any = None, block_size: int = 1000) -> RowStream:
        """
        Start a streaming read.

        Raises:
            QueryError: If the query cannot be started (retryable)
        """
        blocks, on_close = await self._call(
            self._start_stream, query, params, block_size, action="query start"
        )
        return RowStream(blocks, on_close=on_close, description=f"{self.kind.value} stream")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def ensure_table(self, table: str, columns: Sequence) -> None:
        """CREATE TABLE IF NOT EXISTS with mapped destination types."""
        ddl = create_table_sql(self.kind, self.qualify_table(table), columns)
        await self._call(self._execute_ddl, ddl, action="create table", error_cls=BatchWriteError)
        logger.info(f"Ensured {self.kind.value} table {table}")

    async def write_batch(self, table: str, columns: Sequence, records: List[Record]) -> int:
        """
        Write one batch, all-or-nothing.

        Merges by primary key where the columns carry a key, appends
        otherwise (ClickHouse always appends).

        Raises:
            BatchWriteError: If the destination rejects the batch (retryable)
        """
        if not records:
            return 0
        return await self._call(
            self._write_batch, table, list(columns), records,
            action="batch write", error_cls=BatchWriteError
        )

    def quote(self, identifier: str) -> str:
        return quote_identifier(self.kind, identifier)

    # ------------------------------------------------------------------
    # Blocking hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _connect(self) -> Any:
        """Create and return the vendor client/connection."""
        pass

    @abstractmethod
    def _disconnect(self, client: Any) -> None:
        pass

    @abstractmethod
    def _describe_columns(self, table: str) -> List[Tuple[str, str]]:
        pass

    @abstractmethod
    def _primary_key_columns(self, table: str) -> List[str]:
        pass

    @abstractmethod
    def _list_tables(self) -> List[str]:
        pass

    @abstractmethod
    def _start_stream(
        self, query: str, params: Any, block_size: int
    ) -> Tuple[Iterator[Sequence[Row]], Optional[Callable[[], None]]]:
        """Return (block iterator, cursor closer)."""
        pass

    @abstractmethod
    def _execute_ddl(self, ddl: str) -> None:
        pass

    @abstractmethod
    def _write_batch(self, table: str, columns: List, records: List[Record]) -> int:
        pass

    async def _call(
        self,
        func: Callable[..., Any],
        *args: Any,
        action: str,
        error_cls=QueryError,
    ) -> Any:
        if self._client is None:
            raise WarehouseConnectionError(
                f"{self.kind.value} connection is not open",
                context={"warehouse": self.kind.value, "action": action}
            )
        try:
            return await asyncio.to_thread(func, *args)
        except SyncError:
            raise
        except Exception as e:
            raise error_cls(
                f"{self.kind.value} {action} failed",
                context={"warehouse": self.kind.value, "action": action},
                original_exception=e
            )

    def _split_table(self, table: str, default_schema: Optional[str]) -> Tuple[Optional[str], str]:
        """Split `schema.table` into (schema, table), defaulting the schema."""
        parts = table.split(".")
        if len(parts) >= 2:
            return parts[-2], parts[-1]
        return default_schema, parts[0]
