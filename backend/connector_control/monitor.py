"""Per-pipeline wiring of status polling, table refresh and teardown."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from connector_control.burst_refresher import MutationBurstRefresher
from connector_control.config import STATUS_POLL_INTERVAL_SECONDS, TABLE_REFRESH_INTERVAL_SECONDS
from connector_control.config_resolver import ConfigResolver
from connector_control.registry import ConnectorRegistry
from connector_control.repository import PipelineRepository
from connector_control.scheduler import ScheduledTaskRegistry
from connector_control.status_poller import RuntimeStatusPoller
from connector_control.table_discovery import TableDiscoveryClient, build_tables_from_config, enrich_tables
from connector_control.view_model import VersionedView

logger = logging.getLogger(__name__)

TABLE_CONCERN = "table-stats"


class PipelineMonitor:
    """Owns the timers of every open pipeline view.

    ``open`` starts the status and table concerns of a pipeline, ``close``
    cancels all of its timers. ``track`` only registers a pipeline so that
    commands can burst-refresh it without starting periodic polling.
    """

    def __init__(
        self,
        session_factory: Callable,
        registry: ConnectorRegistry,
        kafka_client,
        discovery_client: Optional[TableDiscoveryClient] = None,
        scheduler: Optional[ScheduledTaskRegistry] = None,
        status_interval: float = STATUS_POLL_INTERVAL_SECONDS,
        table_interval: float = TABLE_REFRESH_INTERVAL_SECONDS,
        burst_delays: Optional[List[float]] = None
    ):
        self.session_factory = session_factory
        self.resolver = ConfigResolver(registry)
        self.discovery_client = discovery_client
        self.scheduler = scheduler or ScheduledTaskRegistry()
        self.table_interval = table_interval
        self.poller = RuntimeStatusPoller(kafka_client, self.scheduler, interval=status_interval)
        self.burst_refresher = MutationBurstRefresher(self.poller, self.scheduler, delays=burst_delays)
        self._source_configs: Dict[str, Dict[str, Any]] = {}
        self._open: Set[str] = set()

    def _load(self, pipeline_id: str):
        db = self.session_factory()
        try:
            repository = PipelineRepository(db)
            pipeline = repository.get_pipeline(pipeline_id)
            connectors = [c for c in (pipeline.source_connector, pipeline.sink_connector) if c]
            self.resolver.resolve_all(connectors)

            source_config = pipeline.source_connector.effective_config() if pipeline.source_connector else {}
            sink_config = pipeline.sink_connector.effective_config() if pipeline.sink_connector else {}
            tables = repository.list_tables(pipeline_id, topic_prefix=source_config.get("topic.prefix"))
            if not tables:
                tables = build_tables_from_config(source_config, sink_config, pipeline_id)
            return pipeline, source_config, tables
        finally:
            db.close()

    async def track(self, pipeline_id: str) -> VersionedView:
        """Register a pipeline with the poller without starting timers."""
        view = self.poller.view(pipeline_id)
        if view is not None:
            return view
        pipeline, source_config, tables = await asyncio.to_thread(self._load, pipeline_id)
        self._source_configs[pipeline_id] = source_config
        return self.poller.register(
            pipeline_id,
            pipeline.source_connector.name if pipeline.source_connector else None,
            pipeline.sink_connector.name if pipeline.sink_connector else None,
            tables,
        )

    async def reload(self, pipeline_id: str) -> VersionedView:
        """Rebuild a tracked pipeline's tables and discovery params from its current config.

        Stats already shown for a table that is still present are kept.
        """
        view = self.poller.view(pipeline_id)
        if view is None:
            return await self.track(pipeline_id)
        pipeline, source_config, tables = await asyncio.to_thread(self._load, pipeline_id)
        self._source_configs[pipeline_id] = source_config
        known_stats = {
            table.key: {"rowCount": table.row_count, "sizeEstimate": table.size_estimate}
            for table in view.tables
        }
        logger.info(f"Reloaded tables of pipeline {pipeline_id} after a config change")
        return self.poller.register(
            pipeline_id,
            pipeline.source_connector.name if pipeline.source_connector else None,
            pipeline.sink_connector.name if pipeline.sink_connector else None,
            enrich_tables(tables, known_stats),
        )

    async def open(self, pipeline_id: str) -> VersionedView:
        """Start status polling and table refreshes for a pipeline view."""
        view = await self.track(pipeline_id)
        if pipeline_id in self._open:
            return view
        self.poller.start(pipeline_id)
        if self.discovery_client is not None:
            self.scheduler.start_periodic(
                TABLE_CONCERN,
                pipeline_id,
                lambda: self.refresh_tables(pipeline_id),
                self.table_interval,
            )
        self._open.add(pipeline_id)
        logger.info(f"Opened monitor for pipeline {pipeline_id}")
        return view

    async def refresh_tables(self, pipeline_id: str) -> None:
        """Refresh row counts and size estimates of the view's tables."""
        view = self.poller.view(pipeline_id)
        if view is None or self.discovery_client is None:
            return
        stats = await asyncio.to_thread(self.discovery_client.fetch_stats, self._source_configs.get(pipeline_id))
        if not stats:
            # Keep the last known stats when discovery fails
            return
        view.set_tables(enrich_tables(view.tables, stats))
        await asyncio.to_thread(self._save_tables, pipeline_id, view)

    def _save_tables(self, pipeline_id: str, view: VersionedView) -> None:
        db = self.session_factory()
        try:
            PipelineRepository(db).save_table_projection(pipeline_id, view.tables)
        finally:
            db.close()

    def close(self, pipeline_id: str) -> int:
        """Cancel every timer of a pipeline and drop its view.

        Returns:
            Number of concerns that were stopped
        """
        stopped = self.scheduler.stop_pipeline(pipeline_id)
        self.poller.unregister(pipeline_id)
        self._source_configs.pop(pipeline_id, None)
        self._open.discard(pipeline_id)
        logger.info(f"Closed monitor for pipeline {pipeline_id}")
        return stopped

    def close_all(self) -> None:
        for pipeline_id in list(self._source_configs):
            self.close(pipeline_id)
        self.scheduler.stop_all()

    def is_open(self, pipeline_id: str) -> bool:
        return pipeline_id in self._open

    def snapshot(self, pipeline_id: str) -> Optional[Dict[str, Any]]:
        view = self.poller.view(pipeline_id)
        return view.snapshot() if view else None
