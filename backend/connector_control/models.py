"""Domain models for connector configuration and runtime status."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from connector_control.masking import mask_config


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PipelineStatus(str, Enum):
    """Pipeline lifecycle status."""
    DRAFT = "draft"
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"
    STOPPED = "stopped"
    DELETED = "deleted"


class ConnectorType(str, Enum):
    """Connector role in a pipeline."""
    SOURCE = "source"
    SINK = "sink"


class TaskState(str, Enum):
    """Task states reported by Kafka Connect."""
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    FAILED = "FAILED"
    UNASSIGNED = "UNASSIGNED"
    RESTARTING = "RESTARTING"


class TableStatus(str, Enum):
    """Derived, display-only status of a table."""
    STREAMING = "streaming"
    SNAPSHOTTING = "snapshotting"
    PAUSED = "paused"
    ERROR = "error"


class MilestoneName(str, Enum):
    """Bootstrap milestones, in display order."""
    SOURCE_CONNECTED = "source_connected"
    INGESTING_STARTED = "ingesting_started"
    STAGING_EVENTS = "staging_events"
    LOADING_STARTED = "loading_started"


MILESTONE_ORDER = [
    MilestoneName.SOURCE_CONNECTED,
    MilestoneName.INGESTING_STARTED,
    MilestoneName.STAGING_EVENTS,
    MilestoneName.LOADING_STARTED,
]


class MilestoneStatus(str, Enum):
    """Status carried by a milestone event."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ConfigSource(str, Enum):
    """Where an effective configuration came from."""
    INLINE = "inline"
    REGISTRY = "registry"
    SNAPSHOT = "snapshot"


class ChangeType(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


# Keys of the indirection record stored in Connector.config
REGISTRY_META_KEYS = (
    "registry_connector",
    "registry_version",
    "checksum",
    "snapshot_config",
    "connector_class",
    "resolved_config",
)


class _Missing:
    """Marker for a key absent on one side of a diff."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __deepcopy__(self, memo):
        return self


MISSING = _Missing()


def strip_registry_meta(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a flat copy of a config without indirection keys."""
    return {
        key: copy.deepcopy(value)
        for key, value in (config or {}).items()
        if key not in REGISTRY_META_KEYS
    }


class Connector:
    """Source or sink connector of a pipeline.

    ``config`` is either an inline key/value map or an indirection record
    pointing at a registry entry (``registry_connector``) with an inline
    ``snapshot_config`` fallback. ``resolved_config`` is derived and never
    persisted.
    """

    def __init__(
        self,
        id: str,
        name: str,
        type: str,
        pipeline_id: Optional[str] = None,
        connector_class: Optional[str] = None,
        tasks_max: int = 1,
        config: Optional[Dict[str, Any]] = None,
        pending_config: Optional[Dict[str, Any]] = None,
        has_pending_changes: bool = False,
        pending_config_updated_by: Optional[str] = None,
        pending_config_updated_at: Optional[datetime] = None,
        last_deployed_at: Optional[datetime] = None,
        resolved_config: Optional[Dict[str, Any]] = None,
    ):
        self.id = id
        self.name = name
        self.type = type.value if isinstance(type, ConnectorType) else type
        self.pipeline_id = pipeline_id
        self.connector_class = connector_class
        self.tasks_max = tasks_max
        self.config = config or {}
        self.pending_config = pending_config
        self.has_pending_changes = has_pending_changes
        self.pending_config_updated_by = pending_config_updated_by
        self.pending_config_updated_at = pending_config_updated_at
        self.last_deployed_at = last_deployed_at
        self.resolved_config = resolved_config

    @property
    def registry_name(self) -> Optional[str]:
        """Registry entry this connector points at, if any."""
        name = self.config.get("registry_connector") if isinstance(self.config, dict) else None
        return name or None

    @property
    def snapshot_config(self) -> Optional[Dict[str, Any]]:
        snapshot = self.config.get("snapshot_config") if isinstance(self.config, dict) else None
        return snapshot if isinstance(snapshot, dict) else None

    def effective_config(self) -> Dict[str, Any]:
        """Resolved config when available, else the best local guess."""
        if self.resolved_config is not None:
            return self.resolved_config
        if self.snapshot_config is not None:
            return self.snapshot_config
        return strip_registry_meta(self.config)

    def to_dict(self) -> Dict[str, Any]:
        """Convert connector to dictionary with secrets masked."""
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "name": self.name,
            "type": self.type,
            "connector_class": self.connector_class,
            "tasks_max": self.tasks_max,
            "config": mask_config(self.config),
            "resolved_config": mask_config(self.resolved_config) if self.resolved_config is not None else None,
            "pending_config": mask_config(self.pending_config) if self.pending_config is not None else None,
            "has_pending_changes": self.has_pending_changes,
            "pending_config_updated_by": self.pending_config_updated_by,
            "pending_config_updated_at": self.pending_config_updated_at.isoformat() if self.pending_config_updated_at else None,
            "last_deployed_at": self.last_deployed_at.isoformat() if self.last_deployed_at else None,
        }


class Pipeline:
    """CDC pipeline with at most one source and one sink connector."""

    def __init__(
        self,
        id: str,
        name: str,
        source_type: Optional[str] = None,
        destination_type: Optional[str] = None,
        status: str = PipelineStatus.DRAFT.value,
        source_connector: Optional[Connector] = None,
        sink_connector: Optional[Connector] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.name = name
        self.source_type = source_type
        self.destination_type = destination_type
        self.status = status.value if isinstance(status, PipelineStatus) else status
        self.source_connector = source_connector
        self.sink_connector = sink_connector
        self.created_at = created_at or utcnow()
        self.updated_at = updated_at or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source_type": self.source_type,
            "destination_type": self.destination_type,
            "status": self.status,
            "source_connector": self.source_connector.to_dict() if self.source_connector else None,
            "sink_connector": self.sink_connector.to_dict() if self.sink_connector else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ConnectorVersion:
    """Immutable registry version of a named connector configuration."""

    def __init__(
        self,
        name: str,
        kind: str,
        connector_class: str,
        config: Dict[str, Any],
        version: int,
        checksum: str,
        is_active: bool = False,
        created_by: Optional[str] = None,
        created_at: Optional[datetime] = None,
        warnings: Optional[List[str]] = None,
    ):
        self.name = name
        self.kind = kind
        self.connector_class = connector_class
        self._config = copy.deepcopy(config)
        self.version = version
        self.checksum = checksum
        self.is_active = is_active
        self.created_by = created_by
        self.created_at = created_at or utcnow()
        self.warnings = list(warnings or [])

    @property
    def config(self) -> Dict[str, Any]:
        # Callers get a copy so the stored version can never be edited in place
        return copy.deepcopy(self._config)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "connector_class": self.connector_class,
            "config": mask_config(self._config),
            "version": self.version,
            "checksum": self.checksum,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "warnings": self.warnings,
        }


class Task:
    """One execution unit of a connector, as observed on the last poll."""

    def __init__(
        self,
        connector_name: str,
        task_number: int,
        state: str,
        worker_id: Optional[str] = None,
        connector_type: Optional[str] = None,
    ):
        self.connector_name = connector_name
        self.task_number = task_number
        self.state = state
        self.worker_id = worker_id
        self.connector_type = connector_type

    @property
    def id(self) -> str:
        return f"{self.connector_name}-{self.task_number}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "connector_name": self.connector_name,
            "connector_type": self.connector_type,
            "task_number": self.task_number,
            "state": self.state,
            "worker_id": self.worker_id,
        }

    def __repr__(self) -> str:
        return f"Task({self.id}, {self.state})"


class ConnectorStatus:
    """Kafka Connect connector status model."""

    def __init__(
        self,
        name: str,
        connector_state: str,
        worker_id: Optional[str] = None,
        tasks: Optional[List[Dict[str, Any]]] = None
    ):
        self.name = name
        self.connector_state = connector_state  # RUNNING, FAILED, PAUSED, etc.
        self.worker_id = worker_id
        self.tasks = tasks or []

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ConnectorStatus":
        """Build from a ``GET /connectors/{name}/status`` response."""
        connector = payload.get("connector") or {}
        return cls(
            name=payload.get("name", ""),
            connector_state=connector.get("state", "UNKNOWN"),
            worker_id=connector.get("worker_id"),
            tasks=list(payload.get("tasks") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert connector status to dictionary."""
        return {
            "name": self.name,
            "connector": {"state": self.connector_state, "worker_id": self.worker_id},
            "tasks": self.tasks
        }

    @property
    def is_running(self) -> bool:
        """Check if connector is running."""
        return self.connector_state == TaskState.RUNNING.value

    @property
    def running_tasks(self) -> int:
        return sum(1 for task in self.tasks if task.get("state") == TaskState.RUNNING.value)


class TableObject:
    """Schema-qualified table participating in a pipeline.

    ``status`` is recomputed from the live task set on every refresh.
    """

    def __init__(
        self,
        schema_name: str,
        table_name: str,
        id: Optional[str] = None,
        included: bool = True,
        source_topic: Optional[str] = None,
        destination_table: Optional[str] = None,
        row_count: int = 0,
        size_estimate: str = "0 B",
        status: str = TableStatus.STREAMING.value,
    ):
        self.id = id
        self.schema_name = schema_name
        self.table_name = table_name
        self.included = included
        self.source_topic = source_topic
        self.destination_table = destination_table or f"{schema_name}_{table_name}"
        self.row_count = row_count
        self.size_estimate = size_estimate
        self.status = status.value if isinstance(status, TableStatus) else status

    @property
    def key(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    def copy(self, **changes: Any) -> "TableObject":
        clone = copy.copy(self)
        for attr, value in changes.items():
            setattr(clone, attr, value)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "schema_name": self.schema_name,
            "table_name": self.table_name,
            "included": self.included,
            "source_topic": self.source_topic,
            "destination_table": self.destination_table,
            "row_count": self.row_count,
            "size_estimate": self.size_estimate,
            "status": self.status,
        }


class ProgressEvent:
    """Timestamped milestone event from a pipeline's progress log."""

    def __init__(
        self,
        event_type: str,
        event_status: str,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        pipeline_id: Optional[str] = None,
    ):
        self.pipeline_id = pipeline_id
        self.event_type = event_type.value if isinstance(event_type, MilestoneName) else event_type
        self.event_status = event_status.value if isinstance(event_status, MilestoneStatus) else event_status
        self.occurred_at = occurred_at or utcnow()
        self.metadata = metadata or {}


class Milestone:
    """Projected milestone shown in the progress view."""

    def __init__(
        self,
        name: str,
        event_status: str = MilestoneStatus.PENDING.value,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.name = name
        self.event_status = event_status
        self.occurred_at = occurred_at
        self.metadata = metadata or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.name,
            "event_status": self.event_status,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "metadata": self.metadata,
        }


class ResolvedConfig:
    """Result of resolving a connector's effective configuration.

    ``source`` tells callers whether they got live registry data or a
    fallback; ``error`` keeps the reason a registry lookup failed.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        source: ConfigSource,
        registry_connector: Optional[str] = None,
        version: Optional[int] = None,
        error: Optional[str] = None,
    ):
        self.config = config
        self.source = source
        self.registry_connector = registry_connector
        self.version = version
        self.error = error

    @property
    def is_fallback(self) -> bool:
        return self.source == ConfigSource.SNAPSHOT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config": mask_config(self.config),
            "source": self.source.value,
            "registry_connector": self.registry_connector,
            "version": self.version,
            "is_fallback": self.is_fallback,
            "error": self.error,
        }


class ConfigChange:
    """One field that differs between two configurations."""

    def __init__(self, field: str, old_value: Any, new_value: Any, change_type: ChangeType):
        self.field = field
        self.old_value = old_value
        self.new_value = new_value
        self.change_type = change_type

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "old_value": None if self.old_value is MISSING else self.old_value,
            "new_value": None if self.new_value is MISSING else self.new_value,
            "change_type": self.change_type.value,
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigChange):
            return NotImplemented
        return (
            self.field == other.field
            and self.old_value == other.old_value
            and self.new_value == other.new_value
            and self.change_type == other.change_type
        )

    def __repr__(self) -> str:
        return f"ConfigChange({self.field!r}, {self.old_value!r} -> {self.new_value!r})"


class DeployResult:
    """Outcome of deploying a connector's pending configuration."""

    def __init__(
        self,
        connector_id: str,
        connector_name: str,
        changes: List[ConfigChange],
        version: Optional[int] = None,
        checksum: Optional[str] = None,
        degraded: bool = False,
        warnings: Optional[List[str]] = None,
    ):
        self.connector_id = connector_id
        self.connector_name = connector_name
        self.changes = changes
        self.version = version
        self.checksum = checksum
        self.degraded = degraded
        self.warnings = warnings or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connector_id": self.connector_id,
            "connector_name": self.connector_name,
            "version": self.version,
            "checksum": self.checksum,
            "degraded": self.degraded,
            "warnings": self.warnings,
            "changes": [change.to_dict() for change in self.changes],
        }
