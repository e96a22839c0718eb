"""Table list and live table statistics for a pipeline's source database."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from connector_control.config import BACKEND_URL, REQUEST_TIMEOUT_SECONDS
from connector_control.exceptions import TransientNetworkError
from connector_control.models import TableObject, TableStatus

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"
DEFAULT_TOPIC_PREFIX = "topic"

TableStats = Dict[str, Dict[str, Any]]


def connection_params_from_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Map Debezium source keys onto the discovery service's connection fields."""
    connector_class = str(config.get("connector.class") or "").lower()
    connection_type = "oracle" if "oracle" in connector_class else "postgresql"

    port = config.get("database.port")
    try:
        port = int(port) if port is not None else None
    except (TypeError, ValueError):
        port = None

    return {
        "connectionType": connection_type,
        "host": config.get("database.hostname"),
        "port": port,
        "database": config.get("database.dbname"),
        "username": config.get("database.user"),
        "password": config.get("database.password"),
        "schemaName": config.get("database.schema") or DEFAULT_SCHEMA,
    }


def _split_list(value: Any) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


def build_tables_from_config(
    source_config: Optional[Dict[str, Any]],
    sink_config: Optional[Dict[str, Any]] = None,
    pipeline_id: Optional[str] = None
) -> List[TableObject]:
    """Derive the table list from connector configs when none is stored.

    ``table.include.list`` of the source wins; otherwise the sink's
    ``topics`` (``prefix.schema.table``) are used. Names without a schema
    fall into ``public``.
    """
    source_config = source_config or {}
    sink_config = sink_config or {}

    table_names = _split_list(source_config.get("table.include.list"))
    if not table_names:
        for topic in _split_list(sink_config.get("topics")):
            parts = topic.split(".")
            table_names.append(f"{parts[1]}.{parts[2]}" if len(parts) >= 3 else topic)

    topic_prefix = source_config.get("topic.prefix") or DEFAULT_TOPIC_PREFIX
    tables = []
    for index, full_name in enumerate(table_names):
        if "." in full_name:
            schema_name, table_name = full_name.split(".", 1)
        else:
            schema_name, table_name = DEFAULT_SCHEMA, full_name
        tables.append(
            TableObject(
                id=f"{pipeline_id or 'config'}-{index}",
                schema_name=schema_name,
                table_name=table_name,
                source_topic=f"{topic_prefix}.{schema_name}.{table_name}",
                status=TableStatus.STREAMING,
            )
        )
    return tables


def enrich_tables(tables: List[TableObject], stats: TableStats) -> List[TableObject]:
    """Fill row counts and size estimates; tables without stats get zeros."""
    enriched = []
    for table in tables:
        table_stats = stats.get(table.key) or {}
        enriched.append(
            table.copy(
                row_count=table_stats.get("rowCount") or 0,
                size_estimate=table_stats.get("sizeEstimate") or "0 B",
            )
        )
    return enriched


class TableDiscoveryClient:
    """Client for the dashboard backend's ``/api/list-tables`` endpoint."""

    def __init__(self, base_url: str = BACKEND_URL, timeout: int = REQUEST_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def list_tables(self, connection: Dict[str, Any]) -> TableStats:
        """List the source tables with live stats.

        Args:
            connection: Connection fields from ``connection_params_from_config``

        Returns:
            Stats keyed by ``schema.table``

        Raises:
            TransientNetworkError: If the request or response is unusable
        """
        url = f"{self.base_url}/api/list-tables"
        try:
            response = self.session.post(url, json=connection, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise TransientNetworkError(f"Table discovery failed: {e}", url=url) from e

        if not isinstance(data, dict) or not data.get("success") or not isinstance(data.get("tables"), list):
            raise TransientNetworkError(
                f"Table discovery returned an invalid response: {data.get('error') if isinstance(data, dict) else data}",
                url=url,
            )

        stats: TableStats = {}
        for item in data["tables"]:
            key = f"{item.get('schema')}.{item.get('table')}"
            stats[key] = {
                "rowCount": item.get("rowCount") or 0,
                "sizeEstimate": item.get("sizeEstimate") or "0 B",
            }
        logger.debug(f"Discovered stats for {len(stats)} table(s)")
        return stats

    def fetch_stats(self, source_config: Optional[Dict[str, Any]]) -> TableStats:
        """Stats for a source config; failures are logged and give no stats."""
        if not source_config:
            return {}
        try:
            return self.list_tables(connection_params_from_config(source_config))
        except TransientNetworkError as e:
            logger.warning(f"Could not fetch table stats: {e}")
            return {}
