"""CRUD access to pipelines, connectors, tables and progress events."""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from connector_control.database.models_db import (
    PipelineConnectorModel,
    PipelineModel,
    PipelineObjectModel,
    ProgressEventModel,
)
from connector_control.exceptions import NotFoundError, ValidationError
from connector_control.models import (
    Connector,
    ConnectorType,
    Pipeline,
    PipelineStatus,
    ProgressEvent,
    TableObject,
    utcnow,
)

logger = logging.getLogger(__name__)


def _connector_from_row(row: PipelineConnectorModel) -> Connector:
    return Connector(
        id=row.id,
        name=row.name,
        type=row.type,
        pipeline_id=row.pipeline_id,
        connector_class=row.connector_class,
        tasks_max=row.tasks_max,
        config=copy.deepcopy(row.config) if row.config else {},
        pending_config=copy.deepcopy(row.pending_config) if row.pending_config is not None else None,
        has_pending_changes=bool(row.has_pending_changes),
        pending_config_updated_by=row.pending_config_updated_by,
        pending_config_updated_at=row.pending_config_updated_at,
        last_deployed_at=row.last_deployed_at,
    )


def _pipeline_from_row(row: PipelineModel) -> Pipeline:
    source = next((c for c in row.connectors if c.type == ConnectorType.SOURCE.value), None)
    sink = next((c for c in row.connectors if c.type == ConnectorType.SINK.value), None)
    status = row.status.value if isinstance(row.status, PipelineStatus) else row.status
    return Pipeline(
        id=row.id,
        name=row.name,
        source_type=row.source_type,
        destination_type=row.destination_type,
        status=status,
        source_connector=_connector_from_row(source) if source else None,
        sink_connector=_connector_from_row(sink) if sink else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _table_from_row(row: PipelineObjectModel, topic_prefix: Optional[str] = None) -> TableObject:
    stats = row.stats or {}
    prefix = topic_prefix or "topic"
    return TableObject(
        id=row.id,
        schema_name=row.schema_name,
        table_name=row.table_name,
        included=row.included,
        source_topic=f"{prefix}.{row.schema_name}.{row.table_name}",
        row_count=stats.get("row_count", 0),
        size_estimate=stats.get("size_estimate", "0 B"),
        status=row.last_status or "streaming",
    )


class PipelineRepository:
    """Repository over one SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    # Pipelines

    def create_pipeline(
        self,
        name: str,
        source_type: Optional[str] = None,
        destination_type: Optional[str] = None,
        status: PipelineStatus = PipelineStatus.DRAFT
    ) -> Pipeline:
        if not name:
            raise ValidationError("Pipeline name is required", field="name")
        row = PipelineModel(
            name=name,
            source_type=source_type,
            destination_type=destination_type,
            status=status,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        logger.info(f"Created pipeline {name} ({row.id})")
        return _pipeline_from_row(row)

    def _get_pipeline_row(self, pipeline_id: str) -> PipelineModel:
        row = (
            self.db.query(PipelineModel)
            .filter(PipelineModel.id == pipeline_id, PipelineModel.deleted_at.is_(None))
            .first()
        )
        if not row:
            raise NotFoundError(f"Pipeline {pipeline_id} not found", resource_type="pipeline", resource_id=pipeline_id)
        return row

    def get_pipeline(self, pipeline_id: str) -> Pipeline:
        return _pipeline_from_row(self._get_pipeline_row(pipeline_id))

    def list_pipelines(self) -> List[Pipeline]:
        rows = (
            self.db.query(PipelineModel)
            .filter(PipelineModel.deleted_at.is_(None))
            .order_by(PipelineModel.created_at)
            .all()
        )
        return [_pipeline_from_row(row) for row in rows]

    # Connectors

    def add_connector(
        self,
        pipeline_id: str,
        name: str,
        type: ConnectorType,
        connector_class: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        tasks_max: int = 1
    ) -> Connector:
        self._get_pipeline_row(pipeline_id)
        connector_type = ConnectorType(type)
        existing = (
            self.db.query(PipelineConnectorModel)
            .filter(
                PipelineConnectorModel.pipeline_id == pipeline_id,
                PipelineConnectorModel.type == connector_type.value,
            )
            .first()
        )
        if existing:
            raise ValidationError(
                f"Pipeline {pipeline_id} already has a {connector_type.value} connector",
                field="type",
            )
        row = PipelineConnectorModel(
            pipeline_id=pipeline_id,
            name=name,
            type=connector_type.value,
            connector_class=connector_class,
            config=copy.deepcopy(config or {}),
            tasks_max=tasks_max,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        logger.info(f"Added {connector_type.value} connector {name} to pipeline {pipeline_id}")
        return _connector_from_row(row)

    def _get_connector_row(self, connector_id: str) -> PipelineConnectorModel:
        row = self.db.query(PipelineConnectorModel).filter(PipelineConnectorModel.id == connector_id).first()
        if not row:
            raise NotFoundError(f"Connector {connector_id} not found", resource_type="connector", resource_id=connector_id)
        return row

    def get_connector(self, connector_id: str) -> Connector:
        return _connector_from_row(self._get_connector_row(connector_id))

    def get_connector_by_name(self, name: str) -> Connector:
        row = self.db.query(PipelineConnectorModel).filter(PipelineConnectorModel.name == name).first()
        if not row:
            raise NotFoundError(f"Connector {name} not found", resource_type="connector", resource_id=name)
        return _connector_from_row(row)

    def save_connector(self, connector: Connector) -> Connector:
        """Persist the configuration facets of a connector.

        ``resolved_config`` is derived and never written.
        """
        row = self._get_connector_row(connector.id)
        row.connector_class = connector.connector_class
        row.tasks_max = connector.tasks_max
        # New objects so the JSON columns are flagged dirty
        row.config = copy.deepcopy(connector.config or {})
        row.pending_config = copy.deepcopy(connector.pending_config) if connector.pending_config is not None else None
        row.has_pending_changes = connector.pending_config is not None
        row.pending_config_updated_by = connector.pending_config_updated_by
        row.pending_config_updated_at = connector.pending_config_updated_at
        row.last_deployed_at = connector.last_deployed_at
        row.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(row)
        return _connector_from_row(row)

    # Tables

    def add_table(
        self,
        pipeline_id: str,
        schema_name: str,
        table_name: str,
        included: bool = True
    ) -> TableObject:
        self._get_pipeline_row(pipeline_id)
        row = PipelineObjectModel(
            pipeline_id=pipeline_id,
            schema_name=schema_name,
            table_name=table_name,
            included=included,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return _table_from_row(row)

    def list_tables(self, pipeline_id: str, topic_prefix: Optional[str] = None) -> List[TableObject]:
        rows = (
            self.db.query(PipelineObjectModel)
            .filter(PipelineObjectModel.pipeline_id == pipeline_id)
            .order_by(PipelineObjectModel.schema_name, PipelineObjectModel.table_name)
            .all()
        )
        return [_table_from_row(row, topic_prefix) for row in rows]

    def save_table_projection(self, pipeline_id: str, tables: List[TableObject]) -> None:
        """Remember the last shown status and stats of each stored table."""
        by_key = {table.key: table for table in tables}
        rows = self.db.query(PipelineObjectModel).filter(PipelineObjectModel.pipeline_id == pipeline_id).all()
        for row in rows:
            table = by_key.get(f"{row.schema_name}.{row.table_name}")
            if table is None:
                continue
            row.last_status = table.status
            row.stats = {"row_count": table.row_count, "size_estimate": table.size_estimate}
        self.db.commit()

    # Progress events

    def append_progress_event(
        self,
        pipeline_id: str,
        event_type: str,
        event_status: str,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None
    ) -> ProgressEvent:
        self._get_pipeline_row(pipeline_id)
        event = ProgressEvent(
            event_type=event_type,
            event_status=event_status,
            occurred_at=occurred_at,
            metadata=metadata,
            pipeline_id=pipeline_id,
        )
        row = ProgressEventModel(
            pipeline_id=pipeline_id,
            event_type=event.event_type,
            event_status=event.event_status,
            event_metadata=event.metadata,
            occurred_at=event.occurred_at,
        )
        self.db.add(row)
        self.db.commit()
        return event

    def list_progress_events(self, pipeline_id: str) -> List[ProgressEvent]:
        rows = (
            self.db.query(ProgressEventModel)
            .filter(ProgressEventModel.pipeline_id == pipeline_id)
            .order_by(ProgressEventModel.occurred_at, ProgressEventModel.created_at)
            .all()
        )
        return [
            ProgressEvent(
                event_type=row.event_type,
                event_status=row.event_status,
                occurred_at=row.occurred_at,
                metadata=row.event_metadata or {},
                pipeline_id=row.pipeline_id,
            )
            for row in rows
        ]
