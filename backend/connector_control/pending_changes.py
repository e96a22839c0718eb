"""Staging, review, deployment and dismissal of connector configuration changes."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from connector_control.audit import record_deploy
from connector_control.config_resolver import ConfigResolver
from connector_control.exceptions import (
    CommandRejected,
    ExternalServiceUnavailable,
    ValidationError,
)
from connector_control.masking import MASK_PLACEHOLDER, is_sensitive_key, mask_config, restore_masked_fields
from connector_control.models import (
    MISSING,
    ChangeType,
    ConfigChange,
    Connector,
    DeployResult,
    strip_registry_meta,
    utcnow,
)
from connector_control.registry import ConnectorRegistry, compute_checksum, evaluate_policies
from connector_control.repository import PipelineRepository

logger = logging.getLogger(__name__)

# Pushes a config to the orchestration API; raising means the deploy is rejected
ApplyCallable = Callable[[Connector, Dict[str, Any]], Any]


def _values_equal(old_value: Any, new_value: Any) -> bool:
    # bools never equal numbers; ints and floats compare numerically
    if isinstance(old_value, bool) or isinstance(new_value, bool):
        return type(old_value) is type(new_value) and old_value == new_value
    if isinstance(old_value, (int, float)) and isinstance(new_value, (int, float)):
        return old_value == new_value
    if isinstance(old_value, dict) and isinstance(new_value, dict):
        return set(old_value) == set(new_value) and all(
            _values_equal(old_value[key], new_value[key]) for key in old_value
        )
    if isinstance(old_value, (list, tuple)) and isinstance(new_value, (list, tuple)):
        return len(old_value) == len(new_value) and all(
            _values_equal(a, b) for a, b in zip(old_value, new_value)
        )
    if type(old_value) is not type(new_value):
        return False
    return old_value == new_value


def diff_configs(old_config: Optional[Dict[str, Any]], new_config: Optional[Dict[str, Any]]) -> List[ConfigChange]:
    """Field-level diff over the union of keys of two configs.

    A key present on only one side has ``MISSING`` on the other. Values are
    compared structurally, so ``1`` and ``"1"`` differ while ``1`` and
    ``1.0`` or equal nested maps do not.

    Returns:
        Changes sorted by field name
    """
    old_config = old_config or {}
    new_config = new_config or {}
    changes = []
    for field in sorted(set(old_config) | set(new_config)):
        old_value = old_config.get(field, MISSING)
        new_value = new_config.get(field, MISSING)
        if old_value is MISSING:
            changes.append(ConfigChange(field, MISSING, new_value, ChangeType.ADDED))
        elif new_value is MISSING:
            changes.append(ConfigChange(field, old_value, MISSING, ChangeType.REMOVED))
        elif not _values_equal(old_value, new_value):
            changes.append(ConfigChange(field, old_value, new_value, ChangeType.CHANGED))
    return changes


def mask_changes(changes: List[ConfigChange]) -> List[ConfigChange]:
    """Mask secret values in a diff while keeping which fields changed."""
    masked = []
    for change in changes:
        old_value, new_value = change.old_value, change.new_value
        if is_sensitive_key(change.field):
            if isinstance(old_value, str) and old_value:
                old_value = MASK_PLACEHOLDER
            if isinstance(new_value, str) and new_value:
                new_value = MASK_PLACEHOLDER
        elif isinstance(old_value, dict) or isinstance(new_value, dict):
            old_value = mask_config(old_value) if isinstance(old_value, dict) else old_value
            new_value = mask_config(new_value) if isinstance(new_value, dict) else new_value
        masked.append(ConfigChange(change.field, old_value, new_value, change.change_type))
    return masked


def _tasks_max(config: Dict[str, Any], default: int) -> int:
    try:
        return int(config.get("tasks.max", default))
    except (TypeError, ValueError):
        return default


class PendingChangeManager:
    """Holds at most one pending configuration per connector."""

    def __init__(
        self,
        repository: PipelineRepository,
        registry: ConnectorRegistry,
        resolver: Optional[ConfigResolver] = None
    ):
        self.repository = repository
        self.registry = registry
        self.resolver = resolver or ConfigResolver(registry)

    def stage_change(self, connector_id: str, new_config: Dict[str, Any], updated_by: Optional[str] = None) -> Connector:
        """Stage a configuration edit, replacing any earlier draft.

        Args:
            connector_id: Connector to edit
            new_config: Full proposed configuration
            updated_by: Author of the edit

        Returns:
            Connector with the pending fields set
        """
        if not isinstance(new_config, dict) or not new_config:
            raise ValidationError("Pending config must be a non-empty object", field="config")

        connector = self.repository.get_connector(connector_id)
        replaced = connector.has_pending_changes
        connector.pending_config = strip_registry_meta(new_config)
        connector.has_pending_changes = True
        connector.pending_config_updated_by = updated_by
        connector.pending_config_updated_at = utcnow()
        connector = self.repository.save_connector(connector)

        if replaced:
            logger.info(f"Replaced pending config of connector {connector.name}")
        else:
            logger.info(f"Staged pending config for connector {connector.name}")
        logger.debug(f"Pending config for {connector.name}: {mask_config(connector.pending_config)}")
        return connector

    def get_diff(self, connector_id: str) -> List[ConfigChange]:
        """Masked diff between the active and the pending configuration."""
        connector = self.repository.get_connector(connector_id)
        if connector.pending_config is None:
            raise ValidationError(f"Connector {connector.name} has no pending changes", field="pending_config")
        active = self.resolver.resolve(connector).config
        pending = restore_masked_fields(connector.pending_config, active)
        return mask_changes(diff_configs(active, pending))

    def deploy(
        self,
        connector_id: str,
        deployed_by: Optional[str] = None,
        apply: Optional[ApplyCallable] = None
    ) -> DeployResult:
        """Promote the pending configuration to a new active registry version.

        When the registry cannot be reached the pending config is written as
        the connector's inline config instead and the result is flagged as
        degraded. Pending state is cleared in both cases.

        Args:
            connector_id: Connector to deploy
            deployed_by: Actor recorded on the version and the audit entry
            apply: Optional callable pushing the config to Kafka Connect first

        Returns:
            DeployResult with the masked diff and the new version

        Raises:
            ValidationError: If nothing is pending or the config violates a policy
            CommandRejected: If ``apply`` fails; pending state is kept
        """
        connector = self.repository.get_connector(connector_id)
        if not connector.has_pending_changes or connector.pending_config is None:
            raise ValidationError(f"Connector {connector.name} has no pending changes to deploy", field="pending_config")

        active = self.resolver.resolve(connector).config
        pending = restore_masked_fields(connector.pending_config, active)
        changes = diff_configs(active, pending)

        connector_class = (
            pending.get("connector.class")
            or connector.connector_class
            or connector.config.get("connector_class")
        )
        if not connector_class:
            raise ValidationError("connector.class is required to deploy", field="connector.class")

        warnings, errors = evaluate_policies(connector.type, connector_class, pending)
        if errors:
            raise ValidationError(
                f"Configuration policy violations: {'; '.join(errors)}",
                field="config",
                errors=errors,
            )

        if apply is not None:
            try:
                apply(connector, pending)
            except CommandRejected:
                raise
            except Exception as e:
                logger.error(f"Applying pending config of {connector.name} failed: {e}")
                raise CommandRejected(str(e), command="deploy", connector_name=connector.name) from e

        registry_name = connector.registry_name or connector.name
        checksum = compute_checksum(pending)
        version_number = None
        degraded = False
        try:
            version = self.registry.create_version(
                registry_name,
                connector.type,
                connector_class,
                pending,
                created_by=deployed_by,
            )
            self.registry.activate_version(registry_name, version.version)
            version_number = version.version
            checksum = version.checksum
            warnings = version.warnings or warnings
            connector.config = {
                "registry_connector": registry_name,
                "registry_version": version.version,
                "checksum": version.checksum,
                "connector_class": connector_class,
                "snapshot_config": pending,
            }
        except ExternalServiceUnavailable as e:
            logger.warning(
                f"Registry unavailable while deploying {connector.name}; "
                f"writing config inline without a version: {e}"
            )
            degraded = True
            connector.config = dict(pending)

        connector.connector_class = connector_class
        connector.tasks_max = _tasks_max(pending, connector.tasks_max)
        connector.pending_config = None
        connector.has_pending_changes = False
        connector.pending_config_updated_by = None
        connector.pending_config_updated_at = None
        connector.last_deployed_at = utcnow()
        self.repository.save_connector(connector)

        result = DeployResult(
            connector_id=connector.id,
            connector_name=connector.name,
            changes=mask_changes(changes),
            version=version_number,
            checksum=checksum,
            degraded=degraded,
            warnings=warnings,
        )
        record_deploy(self.repository.db, result, actor=deployed_by)
        logger.info(
            f"Deployed connector {connector.name}: {len(changes)} change(s), "
            f"version={version_number}, degraded={degraded}"
        )
        return result

    def dismiss(self, connector_id: str) -> Connector:
        """Discard the pending configuration without creating a version."""
        connector = self.repository.get_connector(connector_id)
        if connector.pending_config is None and not connector.has_pending_changes:
            logger.debug(f"Connector {connector.name} has no pending changes to dismiss")
            return connector
        connector.pending_config = None
        connector.has_pending_changes = False
        connector.pending_config_updated_by = None
        connector.pending_config_updated_at = None
        connector = self.repository.save_connector(connector)
        logger.info(f"Dismissed pending config of connector {connector.name}")
        return connector
