"""Bootstrap milestone projection for a pipeline."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import requests

from connector_control.models import (
    MILESTONE_ORDER,
    ConnectorStatus,
    Milestone,
    MilestoneName,
    MilestoneStatus,
    ProgressEvent,
    utcnow,
)
from connector_control.repository import PipelineRepository

logger = logging.getLogger(__name__)


def project_milestones(events: Iterable[ProgressEvent]) -> List[Milestone]:
    """Project an event log onto the four milestones in display order.

    The most recent event per milestone wins; on equal timestamps the one
    later in ``events`` wins. Milestones without events are pending. No
    milestone waits for the previous one.
    """
    latest: Dict[str, ProgressEvent] = {}
    for event in events:
        current = latest.get(event.event_type)
        if current is None or event.occurred_at >= current.occurred_at:
            latest[event.event_type] = event

    milestones = []
    for name in MILESTONE_ORDER:
        event = latest.get(name.value)
        if event is None:
            milestones.append(Milestone(name.value))
        else:
            milestones.append(
                Milestone(
                    name.value,
                    event_status=event.event_status,
                    occurred_at=event.occurred_at,
                    metadata=dict(event.metadata),
                )
            )
    return milestones


def _task_metadata(status: ConnectorStatus) -> Dict[str, object]:
    return {
        "connector_state": status.connector_state,
        "running_tasks": status.running_tasks,
        "total_tasks": len(status.tasks),
    }


def events_from_connector_status(
    source_status: Optional[ConnectorStatus],
    sink_status: Optional[ConnectorStatus],
    now: Optional[datetime] = None
) -> List[ProgressEvent]:
    """Derive milestone events from the current connector states.

    A known source yields ``source_connected`` (completed or failed) and,
    when running, ``ingesting_started``. Staging and loading complete once
    both connectors run.
    """
    now = now or utcnow()
    events = []
    if source_status is not None:
        source_running = source_status.is_running
        events.append(ProgressEvent(
            MilestoneName.SOURCE_CONNECTED,
            MilestoneStatus.COMPLETED if source_running else MilestoneStatus.FAILED,
            occurred_at=now,
            metadata=_task_metadata(source_status),
        ))
        if source_running:
            events.append(ProgressEvent(
                MilestoneName.INGESTING_STARTED,
                MilestoneStatus.COMPLETED,
                occurred_at=now,
                metadata={"connector_state": source_status.connector_state},
            ))

    if source_status is not None and sink_status is not None:
        if source_status.is_running and sink_status.is_running:
            events.append(ProgressEvent(
                MilestoneName.STAGING_EVENTS,
                MilestoneStatus.COMPLETED,
                occurred_at=now,
            ))
            events.append(ProgressEvent(
                MilestoneName.LOADING_STARTED,
                MilestoneStatus.COMPLETED,
                occurred_at=now,
                metadata=_task_metadata(sink_status),
            ))
    return events


class ProgressTracker:
    """Records milestone events per pipeline and projects them."""

    def __init__(self, repository: PipelineRepository, kafka_client=None):
        self.repository = repository
        self.kafka_client = kafka_client

    def record_event(
        self,
        pipeline_id: str,
        event_type: str,
        event_status: str,
        metadata: Optional[Dict[str, object]] = None,
        occurred_at: Optional[datetime] = None
    ) -> ProgressEvent:
        event_type = MilestoneName(event_type).value
        event_status = MilestoneStatus(event_status).value
        event = self.repository.append_progress_event(pipeline_id, event_type, event_status, metadata, occurred_at)
        logger.debug(f"Recorded {event_type}={event_status} for pipeline {pipeline_id}")
        return event

    def get_progress(self, pipeline_id: str) -> List[Milestone]:
        return project_milestones(self.repository.list_progress_events(pipeline_id))

    def _status(self, connector_name: Optional[str]) -> Optional[ConnectorStatus]:
        if not connector_name or self.kafka_client is None:
            return None
        try:
            payload = self.kafka_client.get_connector_status(connector_name)
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to get status of connector {connector_name}: {e}")
            return None
        return ConnectorStatus.from_payload(payload) if payload else None

    async def capture(self, pipeline_id: str) -> List[Milestone]:
        """Append events derived from live connector status, then project.

        An event is only appended when it changes its milestone's status.
        """
        pipeline = self.repository.get_pipeline(pipeline_id)
        source_name = pipeline.source_connector.name if pipeline.source_connector else None
        sink_name = pipeline.sink_connector.name if pipeline.sink_connector else None

        source_status, sink_status = await asyncio.gather(
            asyncio.to_thread(self._status, source_name),
            asyncio.to_thread(self._status, sink_name),
        )
        current = {milestone.name: milestone.event_status for milestone in self.get_progress(pipeline_id)}
        for event in events_from_connector_status(source_status, sink_status):
            if current.get(event.event_type) == event.event_status:
                continue
            self.repository.append_progress_event(
                pipeline_id,
                event.event_type,
                event.event_status,
                event.metadata,
                event.occurred_at,
            )
        return self.get_progress(pipeline_id)
