"""Connector control package."""

from connector_control.models import (
    Connector,
    ConnectorVersion,
    Pipeline,
    ConnectorStatus,
    TableObject,
    Task,
    PipelineStatus,
    TableStatus,
)
from connector_control.masking import mask_config
from connector_control.config_resolver import ConfigResolver
from connector_control.registry import ConnectorRegistry, VersionStore, RegistryClient
from connector_control.pending_changes import PendingChangeManager, diff_configs
from connector_control.status_reconciler import derive_table_status, derive_pipeline_status
from connector_control.status_poller import RuntimeStatusPoller
from connector_control.burst_refresher import MutationBurstRefresher
from connector_control.commands import ConnectorCommandService
from connector_control.progress_tracker import ProgressTracker, project_milestones
from connector_control.scheduler import ScheduledTaskRegistry
from connector_control.kafka_connect_client import KafkaConnectClient

__all__ = [
    "Connector",
    "ConnectorVersion",
    "Pipeline",
    "ConnectorStatus",
    "TableObject",
    "Task",
    "PipelineStatus",
    "TableStatus",
    "mask_config",
    "ConfigResolver",
    "ConnectorRegistry",
    "VersionStore",
    "RegistryClient",
    "PendingChangeManager",
    "diff_configs",
    "derive_table_status",
    "derive_pipeline_status",
    "RuntimeStatusPoller",
    "MutationBurstRefresher",
    "ConnectorCommandService",
    "ProgressTracker",
    "project_milestones",
    "ScheduledTaskRegistry",
    "KafkaConnectClient",
]
