"""Periodic polling of source and sink connector task states."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import requests

from connector_control.config import STATUS_POLL_INTERVAL_SECONDS
from connector_control.exceptions import TransientNetworkError
from connector_control.models import ConnectorType, TableObject
from connector_control.scheduler import ScheduledTaskRegistry
from connector_control.status_reconciler import tasks_from_status
from connector_control.view_model import VersionedView

logger = logging.getLogger(__name__)

STATUS_CONCERN = "connector-status"


class RuntimeStatusPoller:
    """Keeps a ``VersionedView`` per pipeline up to date from Kafka Connect.

    A failed poll leaves the last known tasks in place and marks the view
    stale instead of clearing it.
    """

    def __init__(
        self,
        kafka_client,
        scheduler: ScheduledTaskRegistry,
        interval: float = STATUS_POLL_INTERVAL_SECONDS
    ):
        """Initialize the poller.

        Args:
            kafka_client: Object with ``get_connector_status(name)``
            scheduler: Registry owning the polling timers
            interval: Seconds between silent refreshes
        """
        self.kafka_client = kafka_client
        self.scheduler = scheduler
        self.interval = interval
        self._views: Dict[str, VersionedView] = {}
        self._connectors: Dict[str, Tuple[Optional[str], Optional[str]]] = {}

    def register(
        self,
        pipeline_id: str,
        source_connector: Optional[str],
        sink_connector: Optional[str],
        tables: Optional[List[TableObject]] = None
    ) -> VersionedView:
        """Track a pipeline's connectors; an existing view is kept."""
        self._connectors[pipeline_id] = (source_connector, sink_connector)
        view = self._views.get(pipeline_id)
        if view is None:
            view = VersionedView(pipeline_id, tables)
            self._views[pipeline_id] = view
        elif tables is not None:
            view.set_tables(tables)
        return view

    def unregister(self, pipeline_id: str) -> None:
        self.stop(pipeline_id)
        self._views.pop(pipeline_id, None)
        self._connectors.pop(pipeline_id, None)

    def view(self, pipeline_id: str) -> Optional[VersionedView]:
        return self._views.get(pipeline_id)

    def start(self, pipeline_id: str, run_immediately: bool = True) -> None:
        """Start silent periodic refreshes for a registered pipeline."""
        if pipeline_id not in self._views:
            raise KeyError(f"Pipeline {pipeline_id} is not registered with the status poller")
        self.scheduler.start_periodic(
            STATUS_CONCERN,
            pipeline_id,
            lambda: self.refresh(pipeline_id),
            self.interval,
            run_immediately=run_immediately,
        )
        logger.info(f"Status polling started for pipeline {pipeline_id} every {self.interval}s")

    def stop(self, pipeline_id: str) -> None:
        self.scheduler.stop(STATUS_CONCERN, pipeline_id)

    async def _fetch(self, connector_name: Optional[str]):
        if not connector_name:
            return None
        return await asyncio.to_thread(self.kafka_client.get_connector_status, connector_name)

    async def refresh(self, pipeline_id: str, explicit: bool = False) -> bool:
        """Poll both connectors once and apply the result.

        Args:
            pipeline_id: Pipeline to refresh
            explicit: User-triggered refresh; sets ``loading`` while in flight

        Returns:
            True if the result was applied to the view
        """
        view = self._views.get(pipeline_id)
        if view is None:
            logger.debug(f"Ignoring refresh for unregistered pipeline {pipeline_id}")
            return False
        source_name, sink_name = self._connectors[pipeline_id]

        sequence = view.begin_refresh(explicit)
        try:
            source_payload, sink_payload = await asyncio.gather(
                self._fetch(source_name),
                self._fetch(sink_name),
            )
        except (requests.exceptions.RequestException, ValueError) as e:
            error = TransientNetworkError(f"Status poll failed for pipeline {pipeline_id}: {e}")
            logger.warning(f"{error}; keeping last known tasks")
            view.fail(sequence, str(error))
            return False
        else:
            tasks = (
                tasks_from_status(source_payload, ConnectorType.SOURCE.value)
                + tasks_from_status(sink_payload, ConnectorType.SINK.value)
            )
            connector_states = {}
            if source_name:
                connector_states[source_name] = _connector_state(source_payload)
            if sink_name:
                connector_states[sink_name] = _connector_state(sink_payload)
            return view.apply(sequence, tasks, connector_states)
        finally:
            view.finish_refresh(sequence)


def _connector_state(payload) -> Optional[str]:
    if not payload:
        return None
    return (payload.get("connector") or {}).get("state")
