"""SQLAlchemy ORM models for pipelines, connectors and the connector registry."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from connector_control.database.base import Base
from connector_control.models import PipelineStatus, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class PipelineModel(Base):
    __tablename__ = "pipelines"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, index=True)
    source_type = Column(String(50), nullable=True)
    destination_type = Column(String(50), nullable=True)
    status = Column(
        SQLEnum(PipelineStatus, values_callable=lambda x: [e.value for e in x]),
        default=PipelineStatus.DRAFT,
        nullable=False,
    )

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    connectors = relationship("PipelineConnectorModel", back_populates="pipeline", cascade="all, delete-orphan")
    objects = relationship("PipelineObjectModel", back_populates="pipeline", cascade="all, delete-orphan")
    progress_events = relationship("ProgressEventModel", back_populates="pipeline", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_pipeline_status", "status"),
    )


class PipelineConnectorModel(Base):
    """Source or sink connector of a pipeline, including its pending draft."""
    __tablename__ = "pipeline_connectors"

    id = Column(String(36), primary_key=True, default=_uuid)
    pipeline_id = Column(String(36), ForeignKey("pipelines.id"), nullable=False)
    name = Column(String(255), nullable=False, index=True)
    type = Column(String(10), nullable=False)  # 'source' or 'sink'
    connector_class = Column(String(255), nullable=True)
    tasks_max = Column(Integer, default=1, nullable=False)

    config = Column(JSON, default=dict, nullable=False)

    pending_config = Column(JSON, nullable=True)
    has_pending_changes = Column(Boolean, default=False, nullable=False)
    pending_config_updated_by = Column(String(255), nullable=True)
    pending_config_updated_at = Column(DateTime, nullable=True)

    last_deployed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    pipeline = relationship("PipelineModel", back_populates="connectors")

    __table_args__ = (
        # One source and one sink per pipeline
        UniqueConstraint("pipeline_id", "type", name="uq_pipeline_connector_type"),
    )


class PipelineObjectModel(Base):
    """Table selected for replication in a pipeline."""
    __tablename__ = "pipeline_objects"

    id = Column(String(36), primary_key=True, default=_uuid)
    pipeline_id = Column(String(36), ForeignKey("pipelines.id"), nullable=False)
    schema_name = Column(String(255), nullable=False)
    table_name = Column(String(255), nullable=False)
    included = Column(Boolean, default=True, nullable=False)
    # Last status shown; only used when no live task signal is available
    last_status = Column(String(20), nullable=True)
    stats = Column(JSON, nullable=True)

    pipeline = relationship("PipelineModel", back_populates="objects")

    __table_args__ = (
        Index("idx_objects_pipeline_table", "pipeline_id", "schema_name", "table_name"),
    )


class RegistryConnectorModel(Base):
    """Named registry entry; ``active_version`` is the active pointer."""
    __tablename__ = "registry_connectors"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False, unique=True, index=True)
    kind = Column(String(10), nullable=False)
    connector_class = Column(String(255), nullable=False)
    active_version = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    versions = relationship(
        "ConnectorVersionModel",
        back_populates="registry_connector",
        cascade="all, delete-orphan",
        order_by="ConnectorVersionModel.version",
    )


class ConnectorVersionModel(Base):
    """Immutable configuration version; rows are inserted, never updated."""
    __tablename__ = "connector_versions"

    id = Column(String(36), primary_key=True, default=_uuid)
    registry_connector_id = Column(String(36), ForeignKey("registry_connectors.id"), nullable=False)
    version = Column(Integer, nullable=False)
    config = Column(JSON, nullable=False)
    checksum = Column(String(64), nullable=False)
    created_by = Column(String(255), nullable=True)
    policy_warnings = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    registry_connector = relationship("RegistryConnectorModel", back_populates="versions")

    __table_args__ = (
        UniqueConstraint("registry_connector_id", "version", name="uq_connector_version"),
        Index("idx_connector_versions_checksum", "registry_connector_id", "checksum"),
    )


class ProgressEventModel(Base):
    """Append-only bootstrap milestone event."""
    __tablename__ = "pipeline_progress_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    pipeline_id = Column(String(36), ForeignKey("pipelines.id"), nullable=False)
    event_type = Column(String(50), nullable=False)
    event_status = Column(String(20), nullable=False, default="pending")
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON, default=dict)
    occurred_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    pipeline = relationship("PipelineModel", back_populates="progress_events")

    __table_args__ = (
        Index("idx_pipeline_progress_pipeline_id", "pipeline_id"),
        Index("idx_pipeline_progress_occurred_at", "occurred_at"),
    )


class AuditLogModel(Base):
    """Audit trail of configuration deployments."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(50), nullable=True, index=True)
    resource_id = Column(String(36), nullable=True, index=True)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
