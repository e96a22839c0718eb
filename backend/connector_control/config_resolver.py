"""Effective configuration resolution for pipeline connectors."""

from __future__ import annotations

import logging
from typing import Iterable, List

from connector_control.exceptions import ConnectorControlError
from connector_control.models import ConfigSource, Connector, ResolvedConfig, strip_registry_meta
from connector_control.registry import ConnectorRegistry

logger = logging.getLogger(__name__)


class ConfigResolver:
    """Follows a connector's registry reference, falling back to its snapshot.

    The registry is optional: when it cannot answer, the last snapshot saved
    on the connector is used and the result says so.
    """

    def __init__(self, registry: ConnectorRegistry):
        self.registry = registry

    def resolve(self, connector: Connector) -> ResolvedConfig:
        """Resolve the effective configuration of a connector.

        Never raises; registry failures are logged and produce a
        ``snapshot`` result carrying the error.

        Args:
            connector: Connector whose ``config`` is inline or a registry reference

        Returns:
            ResolvedConfig with the config and where it came from
        """
        registry_name = connector.registry_name
        if not registry_name:
            return ResolvedConfig(config=dict(connector.config or {}), source=ConfigSource.INLINE)

        try:
            active = self.registry.get_active_version(registry_name)
            if active is None:
                raise ConnectorControlError(f"Registry connector {registry_name} has no active version")
            return ResolvedConfig(
                config=active.config,
                source=ConfigSource.REGISTRY,
                registry_connector=registry_name,
                version=active.version,
            )
        except Exception as e:
            logger.warning(
                f"Falling back to snapshot config for connector {connector.name}: "
                f"registry lookup of {registry_name} failed: {e}"
            )
            fallback = connector.snapshot_config
            if fallback is None:
                fallback = strip_registry_meta(connector.config)
            return ResolvedConfig(
                config=dict(fallback),
                source=ConfigSource.SNAPSHOT,
                registry_connector=registry_name,
                version=connector.config.get("registry_version"),
                error=str(e),
            )

    def resolve_all(self, connectors: Iterable[Connector]) -> List[ResolvedConfig]:
        """Resolve several connectors and store the result on each one."""
        results = []
        for connector in connectors:
            resolved = self.resolve(connector)
            connector.resolved_config = resolved.config
            results.append(resolved)
        return results
