"""
Connector selection by warehouse kind
"""

import logging
from typing import Any, Callable, Dict, List, Mapping

from core.exceptions import UnsupportedWarehouseError
from models.base import WarehouseKind
from pipeline.connectors.base import WarehouseConnector

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[Dict[str, Any]], WarehouseConnector]


class ConnectorRegistry:
    """
    Maps a warehouse kind to the factory that builds its connector.

    The orchestrator receives a registry instead of constructing clients
    itself; tests register in-memory fakes the same way.
    """

    def __init__(self, factories: Mapping[WarehouseKind, ConnectorFactory] = None):
        self._factories: Dict[WarehouseKind, ConnectorFactory] = {}
        for kind, factory in (factories or {}).items():
            self.register(kind, factory)

    def register(self, kind: WarehouseKind, factory: ConnectorFactory) -> None:
        self._factories[WarehouseKind(kind)] = factory

    def kinds(self) -> List[WarehouseKind]:
        return list(self._factories)

    def create(self, kind: WarehouseKind, credentials: Dict[str, Any]) -> WarehouseConnector:
        """
        Build an unopened connector.

        Raises:
            UnsupportedWarehouseError: If nothing is registered for `kind`
        """
        try:
            factory = self._factories[WarehouseKind(kind)]
        except (KeyError, ValueError):
            raise UnsupportedWarehouseError(
                f"No connector registered for warehouse kind '{getattr(kind, 'value', kind)}'",
                context={"warehouse": str(getattr(kind, "value", kind))}
            )
        return factory(credentials)


def default_registry() -> ConnectorRegistry:
    """Registry with every built-in backend."""
    from pipeline.connectors.bigquery import BigQueryConnector
    from pipeline.connectors.clickhouse import ClickHouseConnector
    from pipeline.connectors.postgres import PostgresConnector, RedshiftConnector
    from pipeline.connectors.snowflake import SnowflakeConnector

    return ConnectorRegistry({
        WarehouseKind.CLICKHOUSE: ClickHouseConnector,
        WarehouseKind.SNOWFLAKE: SnowflakeConnector,
        WarehouseKind.BIGQUERY: BigQueryConnector,
        WarehouseKind.REDSHIFT: RedshiftConnector,
        WarehouseKind.POSTGRES: PostgresConnector,
    })
